"""CLI entrypoint: enroll a FIDO2 key on every LUKS volume and request it at boot."""

from __future__ import annotations

import argparse
import json
import os
import shutil
import sys
import time
from typing import Any, Dict, Optional

from . import console
from .bootimage import enable_initramfs_regen
from .crypttab import add_unlock_option, require_crypttab
from .devices import list_luks_devices, mapping_chain
from .enroll import ALREADY_ENROLLED, enroll_if_absent
from .errors import EnrollmentError, Fido2LuksError, PreflightError
from .executil import append_jsonl, resolve_log_path, run, trace
from .model import EnrollmentOutcome, LuksDevice, RunConfig
from .paths import DEFAULT_ROOT_MOUNTS, crypttab_path
from .topology import resolve_root_luks_device

RESULT_CODES: Dict[str, int] = {
    "DONE_OK": 0,
    "DRYRUN_OK": 0,
    "FAIL_DECLINED": 1,
    "FAIL_NOT_ROOT": 2,
    "FAIL_MISSING_TOOL": 3,
    "FAIL_DETECTION": 4,
    "FAIL_ENROLLMENT": 5,
    "FAIL_CONFIG": 6,
    "FAIL_BOOT_IMAGE": 7,
    "FAIL_UNHANDLED": 12,
}

REQUIRED_TOOLS = (
    "findmnt",
    "lsblk",
    "dmsetup",
    "cryptsetup",
    "systemd-cryptenroll",
    "rpm-ostree",
)

INTRO = """This script will:
  - Auto-detect your root LUKS device (composefs-safe via /sysroot)
  - Find every other LUKS volume on this machine
  - Enroll your FIDO2 key on each one using systemd-cryptenroll
  - Update {crypttab} (all entries) to include fido2-device=auto
  - Enable rpm-ostree initramfs regeneration

Important: Keep at least one passphrase slot as a fallback."""

WARNING_BANNER = """
############################################################
  WARNING: POTENTIAL DATA LOSS / BOOT FAILURE RISK
############################################################

This tool modifies LUKS metadata and early-boot configuration.

Incorrect use MAY RESULT IN:
  * An unbootable system
  * Loss of access to encrypted data
  * Requirement to recover using a LUKS passphrase or backup

BEFORE PROCEEDING, MAKE SURE:
  * You KNOW your existing LUKS passphrase
  * You have tested LUKS unlock manually
  * Your FIDO2 key PIN is set
  * You understand this is a SYSTEM-LEVEL change

YOU PROCEED ENTIRELY AT YOUR OWN RISK.
############################################################
"""

JSON_OUTPUT_ENABLED = True
CLI_START_MONO = time.perf_counter()


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    raise SystemExit(RESULT_CODES.get(kind, 1))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enroll-fido2-luks",
        description="Enroll a FIDO2 key on the LUKS volumes of this system and request it at boot.",
    )
    parser.add_argument("--dry-run", action="store_true",
                        help="detect and check only; print what would be done (no enrollment, no file changes)")
    parser.add_argument("--yes", dest="assume_yes", action="store_true", help="do not prompt for confirmation")
    parser.add_argument("--reboot", action="store_true", help="reboot after a successful run without asking")
    parser.add_argument("--crypttab", default=None, help="crypttab to update (default: $FIDO2LUKS_CRYPTTAB or /etc/crypttab)")
    parser.add_argument("--mount-point", dest="mount_points", action="append", default=None, metavar="PATH",
                        help="root mount point to inspect; repeatable (default: /sysroot, then /)")
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        dry_run=args.dry_run,
        assume_yes=args.assume_yes,
        reboot=args.reboot,
        crypttab_path=args.crypttab or crypttab_path(),
        root_mounts=tuple(args.mount_points) if args.mount_points else DEFAULT_ROOT_MOUNTS,
    )


def require_root() -> None:
    if os.geteuid() != 0:
        raise PreflightError("Please run as root (sudo enroll-fido2-luks).", result="FAIL_NOT_ROOT")


def require_tools(tools=REQUIRED_TOOLS) -> None:
    missing = [t for t in tools if shutil.which(t) is None]
    if missing:
        raise PreflightError(
            f"Missing required command(s): {', '.join(missing)}",
            result="FAIL_MISSING_TOOL",
            detail={"missing": missing},
        )


def _confirm(cfg: RunConfig, reader=None) -> bool:
    console.banner(INTRO.format(crypttab=cfg.crypttab_path))
    console.banner(WARNING_BANNER, console.RED)
    if cfg.dry_run:
        console.warn("DRY-RUN mode enabled: no changes will be made.")
    if cfg.assume_yes:
        return True
    return console.ask_yes_no("Do you want to proceed?", reader=reader)


def _show_mapping_chain() -> None:
    lines = mapping_chain()
    if not lines:
        return
    console.info("Current mapping chain (lsblk):")
    for line in lines:
        print(f"  {line}", file=sys.stderr)


def _report(outcome: EnrollmentOutcome, root: str) -> Dict[str, Any]:
    dev = LuksDevice(
        outcome.device,
        is_root=outcome.device == root,
        has_fido2_token=outcome.enrolled or outcome.reason == ALREADY_ENROLLED,
    )
    return {
        "device": dev.path,
        "is_root": dev.is_root,
        "has_fido2_token": dev.has_fido2_token,
        "kind": outcome.kind,
        "reason": outcome.reason,
    }


def _enroll_all(devices: list[str], root: str, cfg: RunConfig) -> list[Dict[str, Any]]:
    outcomes: list[Dict[str, Any]] = []
    for device in devices:
        try:
            outcome = enroll_if_absent(device, cfg)
        except EnrollmentError as exc:
            done = [o["device"] for o in outcomes if o["kind"] == "enrolled"]
            exc.detail["enrolled_this_run"] = done
            exc.detail["pending"] = devices[devices.index(device) + 1:]
            if done:
                # No rollback of tokens already added.
                console.warn(
                    f"FIDO2 was enrolled on {', '.join(done)} in this run, but crypttab was NOT updated. "
                    "Re-run after fixing the failure; enrolled devices will be skipped."
                )
            raise
        outcomes.append(_report(outcome, root))
    return outcomes


def _offer_reboot(cfg: RunConfig, reader=None) -> bool:
    if cfg.reboot or (not cfg.assume_yes and console.ask_yes_no("Do you want to reboot now?", reader=reader)):
        console.info("Rebooting...")
        run(["reboot"], check=False)
        return True
    console.info("Reboot later to test: with the FIDO2 key inserted (touch), and without (fallback passphrase).")
    return False


def run_enrollment(cfg: RunConfig, reader=None) -> Dict[str, Any]:
    """Run the whole pipeline. Raises :class:`Fido2LuksError` subclasses on fatal failures."""

    require_root()
    require_tools()
    require_crypttab(cfg.crypttab_path)

    if not _confirm(cfg, reader=reader):
        console.error("Aborted by user.")
        return {"result": "FAIL_DECLINED"}

    console.info("Detecting root LUKS device...")
    root = resolve_root_luks_device(cfg)
    console.info(f"Detected root LUKS device: {root}")
    _show_mapping_chain()

    devices = list_luks_devices(root)
    if not devices:
        console.info("No LUKS devices found; nothing to enroll.")
    else:
        console.info(f"LUKS devices (root first): {', '.join(devices)}")

    outcomes = _enroll_all(devices, root, cfg)
    update = add_unlock_option(cfg.crypttab_path, cfg)
    regen = enable_initramfs_regen(cfg)

    summary: Dict[str, Any] = {
        "result": "DRYRUN_OK" if cfg.dry_run else "DONE_OK",
        "root_device": root,
        "devices": outcomes,
        "crypttab": {
            "path": update.path,
            "backup": update.backup,
            "changed": update.changed_entries,
            "written": update.written,
        },
        "initramfs": regen,
    }
    print("", file=sys.stderr)
    console.ok("Done.")
    if cfg.dry_run:
        console.warn("Dry-run complete. No changes were applied.")
        return summary

    console.info("Reboot required to test FIDO2 unlock at boot.")
    summary["rebooting"] = _offer_reboot(cfg, reader=reader)
    return summary


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    global JSON_OUTPUT_ENABLED
    JSON_OUTPUT_ENABLED = bool(args.json)

    cfg = config_from_args(args)
    trace("cli.args", **{k: (list(v) if isinstance(v, tuple) else v) for k, v in vars(cfg).items()})

    try:
        summary = run_enrollment(cfg)
    except Fido2LuksError as exc:
        console.error(f"{exc.category}: {exc}")
        if exc.category == "detection":
            console.error("Auto-detect failed. Not making changes.")
        _emit_result(exc.result, extra={"error": str(exc), "category": exc.category, **exc.detail})
    kind = summary.pop("result")
    _emit_result(kind, extra=summary)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        console.error(f"unexpected failure: {exc}")
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
