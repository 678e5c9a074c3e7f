"""Command-line interface for rigwright."""
