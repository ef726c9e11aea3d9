"""Fatal error kinds. Skip decisions (not LUKS, already enrolled) are not errors."""


class Fido2LuksError(RuntimeError):
    result = "FAIL_UNHANDLED"
    category = "error"

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.detail = detail or {}


class PreflightError(Fido2LuksError):
    """Not root, or a required tool is missing."""

    category = "preflight"

    def __init__(self, message: str, *, result: str = "FAIL_MISSING_TOOL", detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)
        self.result = result


class DetectionError(Fido2LuksError):
    """The root LUKS device could not be identified. Nothing was changed."""

    result = "FAIL_DETECTION"
    category = "detection"


class EnrollmentError(Fido2LuksError):
    result = "FAIL_ENROLLMENT"
    category = "enrollment"


class ConfigError(Fido2LuksError):
    result = "FAIL_CONFIG"
    category = "config"


class BootImageError(Fido2LuksError):
    result = "FAIL_BOOT_IMAGE"
    category = "boot-image"
