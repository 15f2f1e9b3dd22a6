"""Convoy monitor: read-only views over the run ledger.

Modules
-------
projection
    ``MonitorProjection`` replays the ledger into ``MonitorSnapshot`` models.
renderer
    ``MonitorRenderer`` turns snapshots, service state and scaling events
    into Rich renderables, including continuous ``Rich.Live`` mode.
"""
