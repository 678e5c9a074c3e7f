"""CLI command modules for rigwright."""

from rigwright.cli.commands import migrate_cmd, vcs_cmd

__all__ = ["migrate_cmd", "vcs_cmd"]
