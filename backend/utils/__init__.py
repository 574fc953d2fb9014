"""Shared helpers: logging setup, blocking-I/O offloading and media file handling."""
