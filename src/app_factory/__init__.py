"""Autonomous backlog runner driving AI agents through plan, execute, test, correct."""

__version__ = "0.1.0"
