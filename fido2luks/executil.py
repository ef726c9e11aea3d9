from __future__ import annotations

"""Subprocess wrapper with dry-run hook and JSONL trace logging."""

import datetime as _dt
import json
import os
import shlex
import stat
import subprocess
import time
from typing import Sequence

from .paths import command_timeout, log_dirs


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "fido2luks.jsonl"

TIMEOUT_RC = 124


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return log_dirs()


def _is_private_dir(path: str) -> bool:
    """Owned by us, a real directory, and not writable by group or others."""

    try:
        st = os.lstat(path)
    except OSError:
        return False
    if not stat.S_ISDIR(st.st_mode):
        return False
    return st.st_uid == os.geteuid() and not st.st_mode & (stat.S_IWGRP | stat.S_IWOTH)


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, mode=0o700, exist_ok=True)
        except OSError:
            continue
        # /tmp fallbacks can be pre-created by another user.
        if not _is_private_dir(d_expanded) or not os.access(d_expanded, os.W_OK):
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def combined(self) -> str:
        return f"{(self.out or '').strip()}\n{(self.err or '').strip()}".strip()


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("FIDO2LUKS_LOG_LEVEL", "TRACE").upper()


def append_jsonl(path: str, obj: dict):
    # The trace log is best effort; a read-only /var/log must never stop a run.
    try:
        os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT | os.O_NOFOLLOW, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    path = _ensure_logger()
    if not path:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    append_jsonl(path, rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def format_cmd(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = -1,
    capture: bool = True,
) -> Result:
    """Run ``cmd`` and return a :class:`Result`.

    ``timeout=-1`` picks the configured default; ``None`` waits forever,
    which is what interactive commands (PIN entry, token touch) need.
    ``capture=False`` leaves stdin/stdout/stderr attached to the terminal.
    """

    if timeout == -1:
        timeout = command_timeout()
    trace("exec.start", cmd=list(cmd), dry_run=dry_run)
    if dry_run:
        text = "DRY-RUN: " + format_cmd(cmd)
        return Result(0, text, "", 0.0)
    started = time.time()
    try:
        if capture:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        else:
            proc = subprocess.run(cmd, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        dur = time.time() - started
        trace("exec.timeout", cmd=list(cmd), timeout=timeout, dur=dur)
        if check:
            raise
        out = exc.stdout if isinstance(exc.stdout, str) else ""
        return Result(TIMEOUT_RC, out, f"timed out after {timeout}s", dur)
    dur = time.time() - started
    out = proc.stdout or ""
    err = proc.stderr or ""
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, out=out, err=err)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, out, err)
    return Result(proc.returncode, out, err, dur)
