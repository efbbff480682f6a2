"""Durable operation documents, the shared queue document, and their locks."""
