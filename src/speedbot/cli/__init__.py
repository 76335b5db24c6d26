"""Command-line interface for speedbot."""
