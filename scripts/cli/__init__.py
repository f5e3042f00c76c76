"""
Operator CLI for the solar portal (``solar-admin``).

Runs the recurring tasks on demand (expiry sweep, overdue sweep, monthly
billing), creates the schema, or runs the in-process scheduler in the
foreground.

Entry point: ``solar-admin`` or ``python -m scripts.cli``
"""

from scripts.cli.main import main

__all__ = ["main"]
