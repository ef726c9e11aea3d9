"""Block-device probing and LUKS volume enumeration (read-only)."""
from __future__ import annotations

import json
import os
import stat

from . import console
from .executil import run, trace

LUKS_FSTYPE = "crypto_LUKS"


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def is_luks(path: str) -> bool:
    probe = run(["cryptsetup", "isLuks", path], check=False)
    return probe.rc == 0


def _walk(nodes: list[dict]):
    # Depth-first in lsblk order; children sit right after their parent.
    for node in nodes:
        yield node
        yield from _walk(list(node.get("children") or []))


def parse_lsblk(text: str) -> list[str]:
    """Return the paths of LUKS containers found in ``lsblk -J`` output.

    Raises ``ValueError`` when the payload is not lsblk JSON.
    """

    try:
        payload = json.loads(text or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"unexpected format: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("unexpected format: top level is not an object")

    found: list[str] = []
    for node in _walk(list(payload.get("blockdevices") or [])):
        if (node.get("fstype") or "") != LUKS_FSTYPE:
            continue
        path = node.get("path") or node.get("name") or ""
        if path and not path.startswith("/"):
            path = f"/dev/{path}"
        if path and path not in found:
            found.append(path)
    return found


def order_root_first(devices: list[str], root_device: str | None) -> list[str]:
    if not root_device:
        return list(devices)
    if root_device not in devices:
        console.warn(f"Root device {root_device} not among scanned LUKS devices; enrolling scanned devices only.")
        trace("devices.root_missing", root=root_device, devices=list(devices))
        return list(devices)
    return [root_device] + [d for d in devices if d != root_device]


def list_luks_devices(root_device: str | None = None) -> list[str]:
    """Enumerate LUKS block devices, root first.

    A failing or unreadable scan is reported and treated as "no devices";
    it never aborts the run.
    """

    res = run(["lsblk", "-J", "-p", "-o", "NAME,PATH,TYPE,FSTYPE"], check=False)
    if res.rc != 0:
        console.warn(f"lsblk failed (rc={res.rc}); treating scan as empty.")
        trace("devices.scan_failed", rc=res.rc, err=(res.err or "").strip())
        return []
    try:
        found = parse_lsblk(res.out)
    except ValueError as exc:
        console.warn(f"Could not parse lsblk output: {exc}")
        trace("devices.scan_unparsable", error=str(exc))
        return []

    ordered = order_root_first(found, root_device)
    trace("devices.scan", devices=ordered, root=root_device)
    return ordered


def mapping_chain() -> list[str]:
    """lsblk view of the storage stack, for display only."""

    res = run(["lsblk", "-o", "NAME,TYPE,FSTYPE,MOUNTPOINT,PKNAME"], check=False)
    if res.rc != 0:
        return []
    return [line for line in (res.out or "").splitlines() if line.strip()]
