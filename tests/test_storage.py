"""Tests for vmsession.storage."""

from __future__ import annotations

from dataclasses import replace

import pytest

from vmsession.exceptions import ManagerError
from vmsession.status import OPERATION_LOG
from vmsession.storage import ConfigStore, parse_record, serialize


class TestSerialize:
    def test_key_value_lines(self, default_machine_config):
        text = serialize(default_machine_config)
        lines = text.splitlines()
        assert lines[0] == "id=vm-0001"
        assert "name=test-vm" in lines
        assert "memory_mb=512" in lines
        assert "enable_kvm=false" in lines
        assert "enable_acpi=true" in lines
        assert "cdrom=" in lines

    def test_parse_restores_config(self, default_machine_config):
        cfg = replace(default_machine_config, cdrom="/isos/x.iso", os_family="linux", boot_order="cd-only")
        assert parse_record(serialize(cfg)) == cfg


class TestParseRecord:
    def test_missing_id_is_rejected(self):
        with pytest.raises(ManagerError):
            parse_record("name=orphan\n")

    def test_missing_fields_fall_back_to_defaults(self):
        cfg = parse_record("id=abc\n")
        assert cfg.id == "abc"
        assert cfg.name == "Unknown"
        assert cfg.memory_mb == 512
        assert cfg.cpus == 2
        assert cfg.disk_size_mb == 4096
        assert cfg.vnc_port == 5900
        assert cfg.arch == "x86_64"

    def test_invalid_values_fall_back_to_defaults(self):
        cfg = parse_record("id=abc\nmemory_mb=lots\narch=sparc\nvnc_port=80\nenable_kvm=maybe\n")
        assert cfg.memory_mb == 512
        assert cfg.arch == "x86_64"
        assert cfg.vnc_port == 5900
        assert cfg.enable_kvm is False

    def test_unknown_keys_and_junk_lines_are_ignored(self):
        cfg = parse_record("id=abc\n# comment\nfavourite_colour=blue\nname=box\n")
        assert cfg.name == "box"

    def test_legacy_boot_tokens_are_accepted(self):
        assert parse_record("id=abc\nboot_order=dc\n").boot_order == "cd-then-disk"

    def test_value_may_contain_equals(self):
        cfg = parse_record("id=abc\ncdrom=https://example.com/get?file=x.iso\n")
        assert cfg.cdrom == "https://example.com/get?file=x.iso"


class TestConfigStore:
    def test_save_and_get(self, tmp_path, default_machine_config):
        store = ConfigStore(tmp_path / "configs")
        result = store.save(default_machine_config)
        assert result.ok
        assert result.value == tmp_path / "configs" / "vm-0001.conf"
        assert store.get("vm-0001") == default_machine_config

    def test_get_missing_returns_none(self, tmp_path):
        assert ConfigStore(tmp_path).get("nope") is None

    def test_load_empty_dir(self, tmp_path):
        assert ConfigStore(tmp_path / "missing").load() == []

    def test_load_skips_bad_files(self, tmp_path, default_machine_config):
        store = ConfigStore(tmp_path)
        store.save(default_machine_config)
        (tmp_path / "broken.conf").write_text("name=no id here\n")
        (tmp_path / "notes.txt").write_text("id=ignored\n")

        loaded = store.load()

        assert loaded == [default_machine_config]
        assert any("broken.conf" in e.message for e in OPERATION_LOG.errors())

    def test_save_overwrites(self, tmp_path, default_machine_config):
        store = ConfigStore(tmp_path)
        store.save(default_machine_config)
        store.save(replace(default_machine_config, memory_mb=2048))
        assert store.get("vm-0001").memory_mb == 2048
        assert [p.name for p in tmp_path.iterdir()] == ["vm-0001.conf"]

    def test_save_failure_is_a_result(self, tmp_path, default_machine_config):
        blocker = tmp_path / "configs"
        blocker.write_text("not a directory")
        result = ConfigStore(blocker).save(default_machine_config)
        assert not result.ok

    def test_delete(self, tmp_path, default_machine_config):
        store = ConfigStore(tmp_path)
        store.save(default_machine_config)
        assert store.delete("vm-0001").value is True
        assert store.delete("vm-0001").value is False
        assert store.get("vm-0001") is None
