"""Request initramfs regeneration so the early-boot image picks up FIDO2 unlock."""

from __future__ import annotations

import re

from . import console
from .errors import BootImageError
from .executil import format_cmd, run, trace
from .model import RunConfig
from .paths import initramfs_timeout

REGEN_CMD = ["rpm-ostree", "initramfs", "--enable"]

_ALREADY_ENABLED_RE = re.compile(r"already\s+(?:been\s+)?enabled", re.IGNORECASE)

ENABLED = "enabled"
ALREADY_ENABLED = "already-enabled"
DRY_RUN = "dry-run"


def is_already_enabled(text: str) -> bool:
    return bool(_ALREADY_ENABLED_RE.search(text or ""))


def enable_initramfs_regen(cfg: RunConfig) -> str:
    if cfg.dry_run:
        console.info(f"[DRY-RUN] Would run: {format_cmd(REGEN_CMD)}")
        return DRY_RUN

    res = run(REGEN_CMD, check=False, timeout=initramfs_timeout())
    combined = res.combined
    trace("bootimage.regen", rc=res.rc, output=combined)
    if res.rc == 0:
        console.ok("Initramfs regeneration enabled.")
        return ENABLED
    if is_already_enabled(combined):
        console.info("Initramfs regeneration already enabled.")
        return ALREADY_ENABLED
    raise BootImageError(
        f"{format_cmd(REGEN_CMD)} failed (rc={res.rc}): {combined or 'no output'}",
        detail={"rc": res.rc, "output": combined},
    )
