from __future__ import annotations

import sys
from typing import TextIO

PREFIX = "[PS] "
CONTINUATION_INDENT = " " * len(PREFIX)
ANSI_GRAY = "\x1b[90m"
ANSI_RESET = "\x1b[0m"


def supports_ansi(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        # closed stream
        return False


def format_command(script: str, ansi: bool) -> str:
    lines = script.split("\n")
    body = "".join(
        f"{PREFIX if i == 0 else CONTINUATION_INDENT}{line}\n" for i, line in enumerate(lines)
    )
    plain = f"\n{body}\n"
    if ansi:
        return f"{ANSI_GRAY}{plain}{ANSI_RESET}"
    return plain


class VerboseWriter:
    """Echoes each control-plane request to a diagnostic stream before it runs."""

    def __init__(self, stream: TextIO | None = None, ansi: bool | None = None) -> None:
        self.stream = stream if stream is not None else sys.stderr
        self.ansi = supports_ansi(self.stream) if ansi is None else ansi

    def write(self, script: str) -> None:
        self.stream.write(format_command(script, self.ansi))
        self.stream.flush()
