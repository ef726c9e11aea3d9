"""Add ``fido2-device=auto`` to every active /etc/crypttab entry.

Comment and blank lines pass through byte for byte. The original file is
copied to ``<path>.bak.<epoch>`` before the rewrite, and the rewrite itself
goes through a temp file + rename so the boot-critical file is never left
half-written.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import time

from . import console
from .errors import ConfigError
from .executil import trace
from .model import UNLOCK_OPTION, UNLOCK_OPTION_KEY, CrypttabEntry, CrypttabUpdate, RunConfig
from .paths import backup_path

# crypttab(5): "none" or "-" in the password field means "ask".
DEFAULT_PASSWORD = "none"


def _split_eol(line: str) -> tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def is_passthrough(content: str) -> bool:
    stripped = content.strip()
    return not stripped or stripped.startswith("#")


def parse_entry(content: str) -> CrypttabEntry | None:
    """Parse one crypttab line; ``None`` for comments and blank lines.

    Raises ``ValueError`` for a data line without a device field.
    """

    if is_passthrough(content):
        return None
    fields = content.split()
    if len(fields) < 2:
        raise ValueError(f"unexpected format: {content.strip()!r} has no device field")
    return CrypttabEntry(
        name=fields[0],
        device=fields[1],
        password=fields[2] if len(fields) > 2 else None,
        options=fields[3].split(",") if len(fields) > 3 else None,
    )


def rewrite_line(content: str) -> str:
    """Return ``content`` (no line ending) with the unlock option present exactly once."""

    entry = parse_entry(content)
    if entry is None or entry.has_option(UNLOCK_OPTION_KEY):
        return content

    fields = content.split()
    if entry.options is None:
        # A plain append to "name device" would land in the password field, so
        # the placeholder goes in first. A lone name (parse_entry raises) is
        # never given an options field.
        if entry.password is None:
            return "\t".join([content.rstrip(), DEFAULT_PASSWORD, UNLOCK_OPTION])
        return "\t".join([content.rstrip(), UNLOCK_OPTION])

    fields[3] = f"{fields[3]},{UNLOCK_OPTION}"
    return "\t".join(fields)


def rewrite_text(text: str) -> tuple[str, list[str]]:
    """Rewrite a whole crypttab. Returns the new text and the names of changed entries.

    Lines that cannot be parsed are kept unchanged and reported.
    """

    out: list[str] = []
    changed: list[str] = []
    for line in text.splitlines(keepends=True):
        content, eol = _split_eol(line)
        try:
            updated = rewrite_line(content)
        except ValueError as exc:
            console.warn(f"crypttab: leaving line unchanged ({exc})")
            trace("crypttab.unparsable", line=content, error=str(exc))
            updated = content
        if updated != content:
            changed.append(content.split()[0])
        out.append(updated + eol)
    return "".join(out), changed


def require_crypttab(path: str) -> None:
    if not os.path.isfile(path):
        raise ConfigError(f"{path} not found. Manual configuration is required.", detail={"path": path})


def _atomic_write(path: str, data: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".crypttab.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def add_unlock_option(path: str, cfg: RunConfig) -> CrypttabUpdate:
    require_crypttab(path)
    backup = backup_path(path, int(time.time()))
    update = CrypttabUpdate(path=path)

    try:
        with open(path, "r", encoding="utf-8", newline="") as fh:
            current = fh.read()
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}", detail={"path": path}) from exc

    new_text, changed = rewrite_text(current)
    update.changed_entries = changed

    if cfg.dry_run:
        console.info(f"[DRY-RUN] Would back up {path} to {backup}")
        console.info(f"[DRY-RUN] Would ensure {UNLOCK_OPTION} is present on all active entries")
        if changed:
            console.info(f"[DRY-RUN] Entries that would change: {', '.join(changed)}")
        trace("crypttab.dry_run", path=path, backup=backup, changed=changed)
        return update

    try:
        shutil.copy2(path, backup)
    except OSError as exc:
        raise ConfigError(f"cannot back up {path} to {backup}: {exc}", detail={"path": path}) from exc
    update.backup = backup
    console.info(f"Backed up {path} to {backup}")

    if new_text == current:
        console.info(f"{path} already requests the FIDO2 token on every entry.")
        trace("crypttab.unchanged", path=path, backup=backup)
        return update

    try:
        _atomic_write(path, new_text)
    except OSError as exc:
        raise ConfigError(f"cannot write {path}: {exc}", detail={"path": path, "backup": backup}) from exc
    update.written = True
    console.info(f"Updated {path} (all active entries).")
    trace("crypttab.updated", path=path, backup=backup, changed=changed)
    return update
