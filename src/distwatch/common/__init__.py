"""Shared helpers: logging and filesystem utilities."""
