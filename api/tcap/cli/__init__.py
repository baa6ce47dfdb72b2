"""Command-line interface for time capsules."""
