"""Output rendering abstraction for the trunkline CLI.

File: src/trunkline/ui/render.py
Last updated: 2026-10-19

Purpose
- Provide a thin rendering layer for CLI output with ``rich`` tables when color is on.
- Respect NO_COLOR environment variable and --no-color CLI flag.

What should be included in this file
- CLIRenderer class with methods for common output patterns.
- Deterministic JSON and YAML emitters for machine-readable output.

Functional requirements
- Plain-text rendering is byte-stable for a given input (used by tests and pipes).
- Machine-readable output never contains color codes.
"""

from __future__ import annotations

import json
import os
import sys
from typing import IO, TYPE_CHECKING

import yaml
from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


def _color_allowed(no_color_flag: bool, stream: IO[str]) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output, switching tables to
    ``rich`` when the output stream is a color-capable terminal.
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: IO[str] | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)
        self._console = Console(file=self._stream, highlight=False) if self._color else None

    @property
    def color(self) -> bool:
        return self._color

    def _print(self, line: str = "") -> None:
        print(line, file=self._stream)

    def heading(self, text: str) -> None:
        if self._console is not None:
            self._console.print(f"[bold]{text}[/bold]")
            return
        self._print(text)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def blank(self) -> None:
        self._print()

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def warning(self, text: str) -> None:
        self._print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; empty tables print nothing."""

        if not rows:
            return
        if self._console is not None:
            table = Table(title=title, title_justify="left")
            for header in headers:
                table.add_column(header)
            for row in rows:
                table.add_row(*(str(cell) for cell in row))
            self._console.print(table)
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def ok(self, label: str) -> None:
        self._print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        self._print(f"  FAIL  {label}")

    def emit_json(self, payload: Mapping[str, object] | Sequence[object]) -> None:
        self._print(dump_json(payload))

    def emit_yaml(self, payload: Mapping[str, object]) -> None:
        self._stream.write(dump_yaml(payload))


def dump_json(payload: Mapping[str, object] | Sequence[object]) -> str:
    return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False)


def dump_yaml(payload: Mapping[str, object]) -> str:
    return yaml.safe_dump(
        dict(payload), sort_keys=True, default_flow_style=False, allow_unicode=True
    )


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: IO[str] | None = None
) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "dump_json", "dump_yaml"]
