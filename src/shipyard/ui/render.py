"""Plain-text rendering of CLI results."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


class CLIRenderer:
    """Writes ``key: value`` pairs, bullet lists and aligned tables."""

    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    def text(self, line: str = "") -> None:
        print(line, file=self._stream if self._stream is not None else sys.stdout)

    def kv(self, key: str, value: object) -> None:
        self.text(f"{key}: {value}")

    def section(self, title: str) -> None:
        self.text()
        self.text(title)

    def items(self, entries: Iterable[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self.text(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns separated by two spaces; nothing is printed for no rows."""

        if not rows:
            return
        grid = [list(headers)] + [[str(cell) for cell in row[: len(headers)]] for row in rows]
        widths = [max(len(line[col]) if col < len(line) else 0 for line in grid) for col in range(len(headers))]
        rule = ["-" * width for width in widths]

        if title:
            self.section(title)
        for line in (grid[0], rule, *grid[1:]):
            padded = (cell.ljust(width) for cell, width in zip(line, widths))
            self.text("  " + "  ".join(padded).rstrip())

    def next_steps(self, commands: Sequence[str]) -> None:
        if commands:
            self.section("Next steps:")
            self.items(commands, prefix="$ ")


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
