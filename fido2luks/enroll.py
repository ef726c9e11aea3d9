"""FIDO2 enrollment per LUKS device (skip when already enrolled)."""

from __future__ import annotations

from . import console
from .devices import is_block_device, is_luks
from .errors import EnrollmentError
from .executil import format_cmd, run, trace
from .model import DRY_RUN, ENROLLED, SKIPPED, EnrollmentOutcome, RunConfig

# Token type systemd-cryptenroll writes into the LUKS2 header.
FIDO2_TOKEN_MARKER = "systemd-fido2"
ALREADY_ENROLLED = "FIDO2 token already enrolled"


def enroll_command(device: str) -> list[str]:
    return [
        "systemd-cryptenroll",
        "--fido2-device=auto",
        "--fido2-with-user-presence=yes",
        device,
    ]


def dump_has_fido2_token(dump: str) -> bool:
    return FIDO2_TOKEN_MARKER in (dump or "").lower()


def has_fido2_token(device: str) -> bool:
    res = run(["cryptsetup", "luksDump", device], check=False)
    if res.rc != 0:
        return False
    return dump_has_fido2_token(res.out)


def _skip(device: str, reason: str, warn: bool = True) -> EnrollmentOutcome:
    (console.warn if warn else console.info)(f"Skipping {device}: {reason}")
    trace("enroll.skip", device=device, reason=reason)
    return EnrollmentOutcome(SKIPPED, device, reason)


def enroll_if_absent(device: str, cfg: RunConfig) -> EnrollmentOutcome:
    if not is_block_device(device):
        return _skip(device, "not a block device")
    if not is_luks(device):
        return _skip(device, "not a LUKS device")
    if has_fido2_token(device):
        return _skip(device, ALREADY_ENROLLED, warn=False)

    cmd = enroll_command(device)
    if cfg.dry_run:
        console.info(f"[DRY-RUN] Would enroll FIDO2 on: {device}")
        console.info(f"[DRY-RUN] Command: {format_cmd(cmd)}")
        trace("enroll.dry_run", device=device, cmd=cmd)
        return EnrollmentOutcome(DRY_RUN, device, "dry-run")

    console.info(f"Enrolling your FIDO2 key with {device} (enter the PIN and touch the key when asked)...")
    # Attached to the terminal and without a timeout: PIN entry and touch are interactive.
    res = run(cmd, check=False, timeout=None, capture=False)
    if res.rc != 0:
        raise EnrollmentError(
            f"systemd-cryptenroll failed on {device} (rc={res.rc})",
            detail={"device": device, "rc": res.rc},
        )
    console.ok(f"FIDO2 token enrolled on {device}")
    trace("enroll.done", device=device)
    return EnrollmentOutcome(ENROLLED, device)
