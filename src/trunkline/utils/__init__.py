"""Shared filesystem and process helpers."""
