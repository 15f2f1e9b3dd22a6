"""Backends for the external collaborators.

``protocols`` declares the capability each consumer is allowed to use.
``local_registry`` is an on-disk, content-addressed registry; ``simulated``
holds the in-process platform, scanner, builder, metric feed and firewall.
"""
