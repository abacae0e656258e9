"""Shared infrastructure: configuration, validation, errors, progress."""
