from dataclasses import dataclass, field
from typing import Optional

from .paths import DEFAULT_ROOT_MOUNTS, crypttab_path

UNLOCK_OPTION_KEY = "fido2-device"
UNLOCK_OPTION = "fido2-device=auto"


@dataclass(frozen=True)
class RunConfig:
    dry_run: bool = False
    assume_yes: bool = False
    reboot: bool = False
    crypttab_path: str = field(default_factory=crypttab_path)
    root_mounts: tuple[str, ...] = DEFAULT_ROOT_MOUNTS


@dataclass
class LuksDevice:
    path: str
    is_root: bool = False
    has_fido2_token: bool = False


@dataclass
class MapperResolution:
    raw_source: str
    device_path: str = ""
    real_path: str = ""
    mapper_name: str = ""
    backing_device: str = ""


@dataclass
class CrypttabEntry:
    name: str
    device: str
    password: Optional[str] = None
    options: Optional[list[str]] = None

    def has_option(self, key: str) -> bool:
        for opt in self.options or []:
            if opt == key or opt.startswith(key + "="):
                return True
        return False


SKIPPED = "skipped"
ENROLLED = "enrolled"
DRY_RUN = "dry_run"


@dataclass
class EnrollmentOutcome:
    kind: str
    device: str
    reason: str = ""

    @property
    def enrolled(self) -> bool:
        return self.kind == ENROLLED


@dataclass
class CrypttabUpdate:
    path: str
    backup: Optional[str] = None
    changed_entries: list[str] = field(default_factory=list)
    written: bool = False
