"""Convoy CLI: Typer-based command-line interface.

All output uses Rich for formatted terminal display.
"""
