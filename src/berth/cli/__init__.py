"""Command-line interface for berth (``berth`` console script)."""
