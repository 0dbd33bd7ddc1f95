"""Operator commands, run with ``python -m kbase.commands.<name>``."""
