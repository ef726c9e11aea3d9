"""Resolve the LUKS block device behind the mounted root filesystem.

mount source -> device-mapper node -> mapper name -> ``cryptsetup status``
backing device. Everything here is read-only; a failure at any step raises
:class:`DetectionError` before anything on the system has been touched.
"""
from __future__ import annotations

import os
import re
from typing import Iterable

from . import console
from .devices import is_block_device, is_luks
from .errors import DetectionError
from .executil import run, trace
from .model import MapperResolution, RunConfig

MAPPER_PREFIX = "/dev/mapper/"
DM_NODE_PREFIX = "/dev/dm-"

_STATUS_DEVICE_RE = re.compile(r"^\s*device:\s*(\S+)", re.M)


def strip_bracket_subpath(source: str) -> str:
    """``/dev/dm-0[/root]`` -> ``/dev/dm-0``; btrfs/composefs sources carry a subvolume."""

    return source.split("[", 1)[0].strip()


def parse_dmsetup_name(text: str) -> str:
    for line in (text or "").splitlines():
        parts = line.split()
        if parts:
            return parts[0]
    return ""


def parse_status_device(text: str) -> str:
    """Return the backing device from ``cryptsetup status`` output.

    Raises ``ValueError("missing field")`` when no ``device:`` line is present.
    """

    match = _STATUS_DEVICE_RE.search(text or "")
    if not match:
        raise ValueError("missing field: device")
    return match.group(1)


def _device_realpath(dev: str) -> str:
    # Sources like "composefs" or "overlay" are not paths; keep them as-is.
    if not dev.startswith("/"):
        return dev
    try:
        return os.path.realpath(dev)
    except OSError:
        return dev


def _mount_source(mounts: Iterable[str]) -> tuple[str, str]:
    for mountpoint in mounts:
        res = run(["findmnt", "-n", "-o", "SOURCE", mountpoint], check=False)
        source = (res.out or "").strip() if res.rc == 0 else ""
        trace("topology.findmnt", mountpoint=mountpoint, rc=res.rc, source=source)
        if source:
            return mountpoint, source.splitlines()[0]
    return "", ""


def mapper_name_for(real_path: str) -> str:
    if real_path.startswith(MAPPER_PREFIX):
        return real_path[len(MAPPER_PREFIX):]
    if real_path.startswith(DM_NODE_PREFIX):
        res = run(["dmsetup", "info", "-C", "--noheadings", "-o", "name", real_path], check=False)
        if res.rc != 0:
            return ""
        return parse_dmsetup_name(res.out)
    return real_path


def resolve_root_luks_device(cfg: RunConfig) -> str:
    mountpoint, raw = _mount_source(cfg.root_mounts)
    if not raw:
        raise DetectionError(
            "no source: unable to detect the root mount SOURCE (is the root filesystem mounted?)",
            detail={"mounts": list(cfg.root_mounts)},
        )

    chain = MapperResolution(raw_source=raw)
    chain.device_path = strip_bracket_subpath(raw)
    console.info(f"{mountpoint} SOURCE (raw): {chain.raw_source}")
    console.info(f"{mountpoint} SOURCE (device): {chain.device_path}")

    chain.real_path = _device_realpath(chain.device_path)
    console.info(f"{mountpoint} SOURCE (resolved): {chain.real_path}")

    chain.mapper_name = mapper_name_for(chain.real_path)
    if not chain.mapper_name:
        raise DetectionError(f"Unable to determine mapper name from {chain.real_path}", detail=dict(vars(chain)))
    console.info(f"Root mapper name: {chain.mapper_name}")

    status = run(["cryptsetup", "status", chain.mapper_name], check=False)
    try:
        chain.backing_device = parse_status_device(status.out)
    except ValueError as exc:
        raise DetectionError(
            f"cryptsetup status did not reveal backing device for {chain.mapper_name} ({exc})",
            detail=dict(vars(chain)),
        ) from exc
    console.info(f"Backing device from cryptsetup: {chain.backing_device}")

    if not is_block_device(chain.backing_device):
        raise DetectionError(
            f"Detected backing device is not a block device: {chain.backing_device}",
            detail=dict(vars(chain)),
        )
    if not is_luks(chain.backing_device):
        raise DetectionError(f"Detected backing device is not LUKS: {chain.backing_device}", detail=dict(vars(chain)))

    trace("topology.resolved", **vars(chain))
    return chain.backing_device
