import os
import stat

import pytest

from fido2luks import crypttab
from fido2luks.errors import ConfigError
from fido2luks.model import RunConfig

SAMPLE = (
    "# /etc/crypttab: mappings for encrypted partitions.\n"
    "\n"
    "   # indented comment stays put\n"
    "myroot\t/dev/sda3\tnone\tdiscard\n"
    "luks-1234 UUID=1234-abcd none luks,fido2-device=auto\n"
    "data   /dev/sdb1   none\n"
)


def test_line_with_options_gets_directive_appended():
    assert crypttab.rewrite_line("myroot\t/dev/sda3\tnone\tdiscard") == (
        "myroot\t/dev/sda3\tnone\tdiscard,fido2-device=auto"
    )


def test_space_separated_line_is_rejoined_with_tabs():
    assert crypttab.rewrite_line("home  UUID=42 /etc/keys/home.key  luks,discard") == (
        "home\tUUID=42\t/etc/keys/home.key\tluks,discard,fido2-device=auto"
    )


def test_three_field_line_gets_a_single_options_field():
    updated = crypttab.rewrite_line("data /dev/sdb1 none")
    assert updated == "data /dev/sdb1 none\tfido2-device=auto"
    fields = updated.split()
    assert len(fields) == 4
    assert fields[3] == "fido2-device=auto"


def test_two_field_line_gets_password_placeholder_before_options():
    updated = crypttab.rewrite_line("data /dev/sdb1")
    assert updated.split() == ["data", "/dev/sdb1", "none", "fido2-device=auto"]


@pytest.mark.parametrize(
    "options",
    [
        "fido2-device=auto",
        "discard,fido2-device=auto",
        "fido2-device=auto,discard",
        "luks,fido2-device=/dev/hidraw1,discard",
    ],
)
def test_existing_directive_leaves_line_unchanged(options):
    line = f"myroot /dev/sda3 none {options}"
    assert crypttab.rewrite_line(line) == line


def test_directive_match_is_anchored_to_option_boundaries():
    assert crypttab.rewrite_line("r /dev/sda3 none x-fido2-device=auto") == (
        "r\t/dev/sda3\tnone\tx-fido2-device=auto,fido2-device=auto"
    )


def test_comments_and_blank_lines_pass_through():
    text, changed = crypttab.rewrite_text(SAMPLE)
    lines = text.splitlines(keepends=True)
    original = SAMPLE.splitlines(keepends=True)
    assert lines[:3] == original[:3]
    assert lines[3] == "myroot\t/dev/sda3\tnone\tdiscard,fido2-device=auto\n"
    assert lines[4] == original[4]
    assert lines[5] == "data   /dev/sdb1   none\tfido2-device=auto\n"
    assert changed == ["myroot", "data"]


def test_rewrite_is_idempotent():
    once, _ = crypttab.rewrite_text(SAMPLE)
    twice, changed = crypttab.rewrite_text(once)
    assert twice == once
    assert changed == []
    for line in twice.splitlines():
        assert line.count("fido2-device=") <= 1


def test_line_endings_and_missing_final_newline_are_kept():
    text, _ = crypttab.rewrite_text("a /dev/sda1 none luks\r\nb /dev/sdb1 none luks")
    assert text == "a\t/dev/sda1\tnone\tluks,fido2-device=auto\r\nb\t/dev/sdb1\tnone\tluks,fido2-device=auto"


def test_malformed_line_is_left_alone():
    text, changed = crypttab.rewrite_text("lonely\n")
    assert text == "lonely\n"
    assert changed == []


def test_parse_entry():
    entry = crypttab.parse_entry("myroot /dev/sda3 none discard,fido2-device=auto")
    assert entry.name == "myroot"
    assert entry.device == "/dev/sda3"
    assert entry.password == "none"
    assert entry.options == ["discard", "fido2-device=auto"]
    assert entry.has_option("fido2-device")
    assert crypttab.parse_entry("  # comment") is None
    assert crypttab.parse_entry("   ") is None
    assert crypttab.parse_entry("data /dev/sdb1").options is None
    with pytest.raises(ValueError, match="unexpected format"):
        crypttab.parse_entry("lonely")


@pytest.fixture
def ct(tmp_path):
    path = tmp_path / "etc" / "crypttab"
    path.parent.mkdir()
    path.write_text(SAMPLE, encoding="utf-8")
    os.chmod(path, 0o600)
    return path


def test_add_unlock_option_backs_up_then_rewrites(ct, monkeypatch):
    monkeypatch.setattr(crypttab.time, "time", lambda: 1700000000.5)

    update = crypttab.add_unlock_option(str(ct), RunConfig())

    backup = ct.parent / "crypttab.bak.1700000000"
    assert update.backup == str(backup)
    assert backup.read_text(encoding="utf-8") == SAMPLE
    assert update.written
    assert "myroot\t/dev/sda3\tnone\tdiscard,fido2-device=auto\n" in ct.read_text(encoding="utf-8")
    assert stat.S_IMODE(ct.stat().st_mode) == 0o600
    assert not [p for p in ct.parent.iterdir() if p.name.startswith(".crypttab.")]


def test_add_unlock_option_twice_is_byte_identical(ct, monkeypatch):
    monkeypatch.setattr(crypttab.time, "time", lambda: 1700000000)
    crypttab.add_unlock_option(str(ct), RunConfig())
    first = ct.read_bytes()

    monkeypatch.setattr(crypttab.time, "time", lambda: 1700000001)
    second_update = crypttab.add_unlock_option(str(ct), RunConfig())

    assert ct.read_bytes() == first
    assert not second_update.written
    assert second_update.changed_entries == []
    assert (ct.parent / "crypttab.bak.1700000001").read_bytes() == first


def test_dry_run_touches_nothing(ct):
    before = ct.read_bytes()
    listing = sorted(p.name for p in ct.parent.iterdir())

    update = crypttab.add_unlock_option(str(ct), RunConfig(dry_run=True))

    assert ct.read_bytes() == before
    assert sorted(p.name for p in ct.parent.iterdir()) == listing
    assert update.backup is None
    assert update.changed_entries == ["myroot", "data"]


def test_missing_crypttab_is_a_config_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        crypttab.add_unlock_option(str(tmp_path / "crypttab"), RunConfig())
    with pytest.raises(ConfigError):
        crypttab.require_crypttab(str(tmp_path / "crypttab"))


def test_failed_write_keeps_original_and_cleans_temp(ct, monkeypatch):
    before = ct.read_bytes()

    def broken_replace(src, dst):
        raise OSError("read-only file system")

    monkeypatch.setattr(crypttab.os, "replace", broken_replace)

    with pytest.raises(ConfigError, match="cannot write"):
        crypttab.add_unlock_option(str(ct), RunConfig())
    assert ct.read_bytes() == before
    assert not [p for p in ct.parent.iterdir() if p.name.startswith(".crypttab.")]
