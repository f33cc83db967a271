"""
CLI MODULE
==========

Command-line interface for heartbeat_core.

Usage:
    python -m heartbeat_core.cli serve
    python -m heartbeat_core.cli agents
    python -m heartbeat_core.cli remind "call the dentist" --in 90
"""

from .main import main, cli_agents, cli_runs, cli_stats, cli_reminders, cli_remind, cli_cancel_reminder

__all__ = [
    'main',
    'cli_agents',
    'cli_runs',
    'cli_stats',
    'cli_reminders',
    'cli_remind',
    'cli_cancel_reminder',
]
