"""Leveled status lines on stderr, mirrored into the trace log."""
from __future__ import annotations

import sys

from .executil import log

BLUE = "\033[1;34m"; YELLOW = "\033[1;33m"; RED = "\033[1;31m"; GREEN = "\033[1;32m"
CYAN = "\033[1;36m"; CLR = "\033[0m"


def _color(code: str, text: str) -> str:
    stream = sys.stderr
    if hasattr(stream, "isatty") and stream.isatty():
        return f"{code}{text}{CLR}"
    return text


def _emit(level: str, tag: str, code: str, msg: str) -> None:
    print(f"{_color(code, tag)} {msg}", file=sys.stderr, flush=True)
    log(level, "console", msg=msg)


def info(msg: str) -> None:  _emit("INFO", "[INFO]", BLUE, msg)
def ok(msg: str) -> None:    _emit("INFO", "[OK]", GREEN, msg)
def warn(msg: str) -> None:  _emit("WARN", "[WARN]", YELLOW, msg)
def error(msg: str) -> None: _emit("ERROR", "[ERROR]", RED, msg)


def banner(text: str, code: str = CYAN) -> None:
    print(_color(code, text), file=sys.stderr, flush=True)


def ask_yes_no(question: str, reader=None) -> bool:
    """Ask once; only ``y``/``Y`` counts as yes, EOF counts as no."""

    print(_color(YELLOW, f"{question} (y/N)"), file=sys.stderr, flush=True)
    try:
        answer = (reader or input)("")
    except EOFError:
        return False
    return answer.strip() in ("y", "Y")
