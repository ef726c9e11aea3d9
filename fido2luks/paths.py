from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_CRYPTTAB = "/etc/crypttab"
_DEFAULT_LOG_DIR = "/var/log/fido2luks"
_DEFAULT_CMD_TIMEOUT = 120.0
_DEFAULT_INITRAMFS_TIMEOUT = 900.0

# /sysroot first: on composefs/ostree systems "/" is an overlay, not the LUKS mapping.
DEFAULT_ROOT_MOUNTS = ("/sysroot", "/")


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def crypttab_path() -> str:
    """Return the crypttab to edit.

    ``FIDO2LUKS_CRYPTTAB`` overrides the system ``/etc/crypttab``; mostly
    useful for trying the editor against a copy.
    """

    override = os.environ.get("FIDO2LUKS_CRYPTTAB")
    if override:
        return _expand(override)
    return _DEFAULT_CRYPTTAB


def log_dirs() -> list[str]:
    dirs = []
    override = os.environ.get("FIDO2LUKS_LOG_DIR")
    if override:
        dirs.append(_expand(override))
    dirs.extend([_DEFAULT_LOG_DIR, "/tmp/fido2luks-logs"])
    return dirs


def _env_seconds(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def command_timeout() -> float:
    return _env_seconds("FIDO2LUKS_CMD_TIMEOUT", _DEFAULT_CMD_TIMEOUT)


def initramfs_timeout() -> float:
    """Budget for ``rpm-ostree initramfs``: it stages a deployment and runs dracut."""

    return _env_seconds("FIDO2LUKS_INITRAMFS_TIMEOUT", _DEFAULT_INITRAMFS_TIMEOUT)


def backup_path(path: str, epoch: int) -> str:
    return f"{path}.bak.{epoch}"
