"""Module entrypoint for ``python -m trunkline``."""

from __future__ import annotations

from trunkline.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
