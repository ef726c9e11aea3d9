#!/usr/bin/env python3
"""
enroll_fido2_luks.py: configure LUKS unlock with a FIDO2 key (systemd-cryptenroll)

- Auto-detects the root LUKS device via /sysroot (composefs-safe)
- Enrolls FIDO2 on that device and on every other LUKS volume
- Updates /etc/crypttab (all entries) to include fido2-device=auto
- Enables rpm-ostree initramfs regeneration

Usage:
  sudo ./enroll_fido2_luks.py
  sudo ./enroll_fido2_luks.py --dry-run

IMPORTANT: Keep at least one passphrase slot as a fallback.
"""

import sys

from fido2luks.cli import main

if __name__ == "__main__":
    sys.exit(main())
