"""HTTP API for time capsules."""
