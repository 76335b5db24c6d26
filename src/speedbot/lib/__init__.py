"""Shared infrastructure: configuration, logging and error handling."""
