"""
trunkline — package root

File: src/trunkline/__init__.py
Last updated: 2026-10-19

Purpose
- Operation state machine and merge integration queue for agent-driven work.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
