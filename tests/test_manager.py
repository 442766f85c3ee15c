"""Lifecycle tests for vmsession.manager."""

from __future__ import annotations

import io
import threading
from dataclasses import replace
from http.client import IncompleteRead
from unittest.mock import MagicMock, patch

import pytest

from vmsession.models import MachineState
from vmsession.status import OPERATION_LOG


def _proc(pid=4242, exit_code=None):
    proc = MagicMock()
    proc.pid = pid
    proc.poll.return_value = exit_code
    proc.returncode = exit_code
    return proc


@pytest.fixture
def popen():
    """Patch Popen; the VNC port counts as open once a process was spawned."""
    with patch("vmsession.manager.subprocess.Popen") as mock_popen:
        mock_popen.return_value = _proc()
        with patch("vmsession.manager.port_open", side_effect=lambda host, port: mock_popen.called):
            with patch("vmsession.manager.time.sleep"):
                yield mock_popen


class TestStart:
    def test_start_launches_and_reports_running(self, manager, default_machine_config, popen, data_dirs):
        result = manager.start(default_machine_config)

        assert result.ok
        assert result.value == 5901
        assert manager.state("vm-0001") is MachineState.RUNNING
        assert manager.running() == ["vm-0001"]
        assert manager.port_of("vm-0001") == 5901

        cmd = popen.call_args[0][0]
        kwargs = popen.call_args.kwargs
        assert cmd[0] == str(manager.installation.bin_dir / "qemu-system-x86_64")
        assert kwargs["cwd"] == data_dirs.vms
        assert kwargs["env"]["QEMU_AUDIO_DRV"] == "none"
        assert kwargs["start_new_session"] is True
        assert "-vnc" in cmd and cmd[cmd.index("-vnc") + 1] == ":1"

    def test_start_provisions_disk(self, manager, default_machine_config, popen, data_dirs):
        manager.start(default_machine_config)
        cmd = popen.call_args[0][0]
        drive = cmd[cmd.index("-drive") + 1]
        # no qemu-img in the fake prefix, so the raw fallback is used
        assert drive.startswith(f"file={data_dirs.images / 'vm-0001.img'},format=raw")

    def test_start_uses_configured_disk_image(self, manager, default_machine_config, popen, tmp_path):
        image = tmp_path / "existing.qcow2"
        image.write_bytes(b"QFI")
        manager.start(replace(default_machine_config, disk_image=str(image)))
        cmd = popen.call_args[0][0]
        assert cmd[cmd.index("-drive") + 1].startswith(f"file={image},format=qcow2")
        assert not manager.provisioner.images_dir.exists()

    def test_second_start_returns_existing_port(self, manager, default_machine_config, popen):
        first = manager.start(default_machine_config)
        second = manager.start(default_machine_config)
        assert first.value == second.value == 5901
        assert popen.call_count == 1

    def test_concurrent_starts_spawn_once(self, manager, default_machine_config, popen):
        results = []

        def _start():
            results.append(manager.start(default_machine_config))

        threads = [threading.Thread(target=_start) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert popen.call_count == 1
        assert all(r.ok and r.value == 5901 for r in results)

    def test_loader_prefix_is_prepended(self, manager, default_machine_config, popen):
        manager.installation._loader = "/system/bin/linker64"
        manager.start(default_machine_config)
        assert popen.call_args[0][0][0] == "/system/bin/linker64"

    def test_missing_boot_media_is_not_fatal(self, manager, default_machine_config, popen, tmp_path):
        cfg = replace(default_machine_config, cdrom=str(tmp_path / "gone.iso"))
        result = manager.start(cfg)
        assert result.ok
        assert "-cdrom" not in popen.call_args[0][0]
        assert any("gone.iso" in e.message for e in OPERATION_LOG.errors())

    def test_existing_boot_media_is_attached(self, manager, default_machine_config, popen, tmp_path):
        iso = tmp_path / "setup.iso"
        iso.write_bytes(b"CD001")
        manager.start(replace(default_machine_config, cdrom=str(iso)))
        cmd = popen.call_args[0][0]
        assert cmd[cmd.index("-cdrom") + 1] == str(iso)
        assert cmd[cmd.index("-boot") + 1] == "order=dc,menu=on"


class TestStartFailures:
    def test_fails_fast_when_not_installed(self, manager, default_machine_config, popen):
        (manager.installation.bin_dir / "qemu-system-x86_64").unlink()
        result = manager.start(default_machine_config)

        assert not result.ok
        assert "QEMU not installed" in result.error
        popen.assert_not_called()
        assert manager.state("vm-0001") is MachineState.ERROR

    def test_early_exit_surfaces_output(self, manager, default_machine_config, popen):
        def _crashing_popen(cmd, stdout=None, **kwargs):
            stdout.write(b"qemu-system-x86_64: -vga cirrus: invalid option\n")
            stdout.flush()
            return _proc(exit_code=1)

        popen.side_effect = _crashing_popen
        result = manager.start(default_machine_config)

        assert not result.ok
        assert result.error.startswith("QEMU failed to start:")
        assert "invalid option" in result.error
        assert manager.running() == []
        assert manager.port_of("vm-0001") is None
        assert manager.state("vm-0001") is MachineState.ERROR

    def test_unlaunchable_binary(self, manager, default_machine_config, popen):
        popen.side_effect = FileNotFoundError("no such file")
        result = manager.start(default_machine_config)
        assert not result.ok
        assert "could not be executed" in result.error
        assert manager.port_of("vm-0001") is None

    def test_port_in_use_on_host(self, manager, default_machine_config, popen):
        with patch("vmsession.manager.port_open", return_value=True):
            result = manager.start(default_machine_config)
        assert not result.ok
        assert "already in use" in result.error
        popen.assert_not_called()

    def test_port_clash_between_machines(self, manager, default_machine_config, popen):
        manager.start(default_machine_config)
        other = replace(default_machine_config, id="vm-0002", name="other")
        result = manager.start(other)
        assert not result.ok
        assert "vm-0001" in result.error
        assert popen.call_count == 1

    def test_retry_after_failure(self, manager, default_machine_config, popen):
        popen.side_effect = FileNotFoundError("no such file")
        assert not manager.start(default_machine_config).ok
        popen.reset_mock(side_effect=True)
        assert manager.start(default_machine_config).ok
        assert manager.state("vm-0001") is MachineState.RUNNING

    def test_unexpected_error_becomes_failed_result(self, manager, default_machine_config, popen):
        with patch("vmsession.manager.build_command", side_effect=ValueError("bad argv")):
            result = manager.start(default_machine_config)
        assert not result.ok
        assert "bad argv" in result.error
        assert manager.state("vm-0001") is MachineState.ERROR
        popen.assert_not_called()


class TestLiveness:
    def test_settles_when_alive_but_port_closed(self, manager, default_machine_config):
        manager.launch_timeout = 0
        with patch("vmsession.manager.subprocess.Popen", return_value=_proc()), patch(
            "vmsession.manager.port_open", return_value=False
        ):
            result = manager.start(default_machine_config)
        assert result.ok
        assert any("not listening yet" in e.message for e in OPERATION_LOG.entries())

    def test_backoff_polls_until_port_opens(self, manager, default_machine_config):
        answers = iter([False, False, False, True])
        with patch("vmsession.manager.subprocess.Popen", return_value=_proc()), patch(
            "vmsession.manager.port_open", side_effect=lambda host, port: next(answers)
        ), patch("vmsession.manager.time.sleep") as mock_sleep:
            manager.launch_timeout = 60
            result = manager.start(default_machine_config)

        assert result.ok
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [0.1, 0.2]

    def test_death_is_observed_as_stopped(self, manager, default_machine_config, popen):
        manager.start(default_machine_config)
        popen.return_value.poll.return_value = 0
        popen.return_value.returncode = 0

        assert manager.state("vm-0001") is MachineState.STOPPED
        assert manager.running() == []
        assert manager.port_of("vm-0001") is None

    def test_wait_until_stopped_returns_after_exit(self, manager, default_machine_config, popen):
        manager.start(default_machine_config)
        popen.return_value.poll.side_effect = [None, None, 0]
        manager.wait_until_stopped("vm-0001", interval=0)
        assert manager.state("vm-0001") is MachineState.STOPPED


class TestStop:
    def test_stop_terminates_and_forgets(self, manager, default_machine_config, popen):
        manager.start(default_machine_config)
        proc = popen.return_value

        result = manager.stop("vm-0001")

        assert result.ok and result.value is True
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()
        assert manager.state("vm-0001") is MachineState.STOPPED
        assert manager.port_of("vm-0001") is None

    def test_stop_unknown_is_noop(self, manager):
        result = manager.stop("ghost")
        assert result.ok and result.value is False

    def test_stop_tolerates_already_exited(self, manager, default_machine_config, popen):
        manager.start(default_machine_config)
        popen.return_value.terminate.side_effect = ProcessLookupError()
        assert manager.stop("vm-0001").ok
        assert manager.port_of("vm-0001") is None

    def test_stop_all(self, manager, default_machine_config, popen):
        manager.start(default_machine_config)
        manager.stop_all()
        assert manager.running() == []


class TestPersistence:
    def test_save_list_and_delete(self, manager, default_machine_config, popen):
        manager.save(default_machine_config)
        assert manager.list_machines() == [default_machine_config]
        assert manager.get_machine("vm-0001") == default_machine_config

        manager.start(default_machine_config)
        result = manager.delete("vm-0001")

        assert result.ok and result.value is True
        popen.return_value.terminate.assert_called_once()
        assert manager.list_machines() == []

    def test_delete_can_remove_disk(self, manager, default_machine_config, popen):
        manager.save(default_machine_config)
        manager.start(default_machine_config)
        disk = manager.provisioner.raw_path("vm-0001")
        assert disk.exists()

        manager.delete("vm-0001", remove_disk=True)
        assert not disk.exists()


class TestResolveMedia:
    def test_plain_path_passes_through(self, manager):
        assert manager.resolve_media("/isos/debian.iso") == "/isos/debian.iso"

    def test_file_uri(self, manager):
        assert manager.resolve_media("file:///isos/my%20disc.iso") == "/isos/my disc.iso"

    def test_remote_uri_is_copied_once(self, manager):
        opener = MagicMock(side_effect=lambda uri: io.BytesIO(b"CD001" * 10))
        manager.media_opener = opener

        first = manager.resolve_media("https://example.com/dl/alpine.iso")
        second = manager.resolve_media("https://example.com/dl/alpine.iso")

        assert first == second
        assert opener.call_count == 1
        name = first.rsplit("/", 1)[-1]
        assert name.startswith("iso_") and name.endswith("-alpine.iso")
        with open(first, "rb") as f:
            assert f.read() == b"CD001" * 10

    def test_distinct_uris_get_distinct_files(self, manager):
        manager.media_opener = lambda uri: io.BytesIO(b"x")
        a = manager.resolve_media("https://a.example/disc.iso")
        b = manager.resolve_media("https://b.example/disc.iso")
        assert a != b

    def test_open_failure_returns_none(self, manager):
        manager.media_opener = MagicMock(side_effect=OSError("unreachable"))
        assert manager.resolve_media("https://example.com/x.iso") is None
        assert any("unreachable" in e.message for e in OPERATION_LOG.errors())

    def test_truncated_download_returns_none(self, manager):
        source = MagicMock()
        source.__enter__.return_value = source
        source.read.side_effect = IncompleteRead(b"CD00001", 100)
        manager.media_opener = lambda uri: source
        assert manager.resolve_media("https://example.com/boot.iso") is None
        assert any("IncompleteRead" in e.message for e in OPERATION_LOG.errors())

    def test_truncated_download_still_boots(self, manager, default_machine_config, popen):
        source = MagicMock()
        source.__enter__.return_value = source
        source.read.side_effect = IncompleteRead(b"CD00001", 100)
        manager.media_opener = lambda uri: source

        result = manager.start(replace(default_machine_config, cdrom="https://example.com/boot.iso"))

        assert result.ok
        assert "-cdrom" not in popen.call_args[0][0]
        assert manager.state("vm-0001") is MachineState.RUNNING
