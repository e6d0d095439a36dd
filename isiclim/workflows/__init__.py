"""Helpers for file transfer and local file handling."""
