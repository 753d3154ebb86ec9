"""Tests for qemuctl.snapshots module."""

from __future__ import annotations

import re
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from qemuctl.exceptions import DuplicateSnapshotError
from qemuctl.images import ImageSnapshotService
from qemuctl.models import Snapshot
from qemuctl.monitor import MonitorClient, MonitorResponse
from qemuctl.snapshots import LiveSnapshotService, SnapshotManager, parse_monitor_snapshots


@pytest.fixture
def socket_file(socket_dir):
    path = socket_dir / "qemuctl-vm.sock"
    path.touch()
    return path


@pytest.fixture
def live(socket_file, fake_engine):
    return LiveSnapshotService(MonitorClient(runner=fake_engine), socket_path_for=lambda vm_id: str(socket_file))


def _idle_supervisor():
    supervisor = MagicMock()
    supervisor.is_running.return_value = False
    return supervisor


class TestParseMonitorSnapshots:
    def test_table(self):
        output = (
            "List of snapshots present on all disks:\n"
            "ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT\n"
            "--        clean-install     1.2 GiB 2024-01-15 10:30:45 00:01:02.345\n"
            "--        after-update      980 MiB 2024-02-01 08:00:00 00:10:00.000\n"
        )
        snaps = parse_monitor_snapshots(output)
        assert snaps == [
            Snapshot("--", "clean-install", datetime(2024, 1, 15, 10, 30, 45), "1.2GiB"),
            Snapshot("--", "after-update", datetime(2024, 2, 1, 8, 0, 0), "980MiB"),
        ]

    def test_empty_listing(self):
        assert parse_monitor_snapshots("There is no snapshot available.") == []

    def test_short_lines_skipped(self):
        output = "--  broken  1.2 GiB 2024-01-15\n--  good  1 MiB 2024-01-15 10:30:45\n"
        snaps = parse_monitor_snapshots(output)
        assert [s.name for s in snaps] == ["good"]

    def test_escape_sequences_stripped(self):
        output = "\x1b[K--        tagged     4 MiB 2024-03-03 12:00:00 00:00:01.000\r\n(qemu) "
        snaps = parse_monitor_snapshots(output)
        assert len(snaps) == 1
        assert snaps[0].name == "tagged"
        assert snaps[0].vm_size == "4MiB"

    def test_bad_date_kept_without_date(self):
        snaps = parse_monitor_snapshots("1  odd  1 MiB yesterday noon 00:00:00.000")
        assert snaps == [Snapshot("1", "odd", None, "1MiB")]

    def test_readline_echo_is_not_a_row(self, readline_echo):
        output = (
            "QEMU 8.2.0 monitor - type 'help' for more information\r\n"
            f"(qemu) {readline_echo('info snapshots')}\r\n"
            "List of snapshots present on all disks:\r\n"
            "ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT\r\n"
            "--        snap1             1.2 MiB 2024-01-15 10:30:45 00:00:01.000\r\n"
            "(qemu) "
        )
        assert [s.name for s in parse_monitor_snapshots(output)] == ["snap1"]


class TestLiveSnapshotService:
    def test_create_pauses_saves_resumes(self, live, fake_engine):
        assert live.create("vm", "s1") is True
        assert fake_engine.commands == ["stop", "savevm s1", "cont"]
        assert fake_engine.paused is False
        assert fake_engine.unpaused_saves == 0

    def test_create_failure_still_resumes(self, live, fake_engine):
        fake_engine.fail_savevm = True
        with patch("qemuctl.snapshots.log"):
            assert live.create("vm", "s1") is False
        assert fake_engine.commands[-1] == "cont"
        assert fake_engine.paused is False

    def test_resume_runs_when_savevm_raises(self):
        monitor = MagicMock()
        monitor.savevm.side_effect = RuntimeError("boom")
        service = LiveSnapshotService(monitor, socket_path_for=lambda vm_id: "/tmp/x.sock")
        with pytest.raises(RuntimeError):
            service.create("vm", "s1")
        monitor.pause.assert_called_once_with("/tmp/x.sock")
        monitor.resume.assert_called_once_with("/tmp/x.sock")

    def test_create_continues_when_pause_fails(self):
        monitor = MagicMock()
        monitor.pause.return_value = None
        monitor.savevm.return_value = MonitorResponse("savevm s1", "")
        service = LiveSnapshotService(monitor, socket_path_for=lambda vm_id: "/tmp/x.sock")
        with patch("qemuctl.snapshots.log") as mock_log:
            assert service.create("vm", "s1") is True
        assert mock_log.call_args_list[0][0][0] == "WARN"
        monitor.resume.assert_called_once()

    def test_round_trip_restores_state(self, live, fake_engine):
        fake_engine.memory = "before"
        assert live.create("vm", "checkpoint")
        fake_engine.memory = "after"
        assert live.restore("vm", "checkpoint")
        assert fake_engine.memory == "before"

    def test_restore_unknown(self, live):
        with patch("qemuctl.snapshots.log"):
            assert live.restore("vm", "nope") is False

    def test_delete(self, live, fake_engine):
        live.create("vm", "s1")
        assert live.delete("vm", "s1") is True
        assert live.list("vm") == []
        with patch("qemuctl.snapshots.log"):
            assert live.delete("vm", "s1") is False

    def test_list(self, live):
        live.create("vm", "a")
        live.create("vm", "b")
        assert [s.name for s in live.list("vm")] == ["a", "b"]

    def test_list_single_snapshot(self, live, fake_engine):
        live.create("vm", "snap1")
        assert [s.name for s in live.list("vm")] == ["snap1"]
        assert fake_engine.commands[-1] == "info snapshots"

    def test_list_empty_through_echo(self, live):
        assert live.list("vm") == []

    def test_transport_failure(self, socket_dir, fake_engine):
        service = LiveSnapshotService(
            MonitorClient(runner=fake_engine), socket_path_for=lambda vm_id: str(socket_dir / "gone.sock")
        )
        with patch("qemuctl.monitor.log"), patch("qemuctl.snapshots.log"):
            assert service.restore("vm", "s1") is False
            assert service.delete("vm", "s1") is False
            assert service.list("vm") == []
        assert fake_engine.commands == []


class TestSnapshotManagerRouting:
    def _manager(self, supervisor, socket_dir, live=None, offline=None, on_rename=None):
        return SnapshotManager(
            supervisor,
            live or MagicMock(),
            offline or MagicMock(),
            socket_path_for=lambda vm_id: str(socket_dir / f"{vm_id}.sock"),
            on_rename=on_rename,
        )

    def test_stopped_vm_uses_image(self, default_vm_config, socket_dir):
        offline = MagicMock()
        offline.list.return_value = []
        offline.create.return_value = True
        manager = self._manager(_idle_supervisor(), socket_dir, offline=offline)
        with patch("qemuctl.snapshots.log"):
            assert manager.create_named(default_vm_config, "s1") is True
        offline.create.assert_called_once_with("/vms/test.qcow2", "s1")

    def test_tracked_vm_uses_monitor(self, default_vm_config, socket_dir):
        supervisor = MagicMock()
        supervisor.is_running.return_value = True
        live = MagicMock()
        live.list.return_value = []
        live.create.return_value = True
        offline = MagicMock()
        manager = self._manager(supervisor, socket_dir, live=live, offline=offline)
        with patch("qemuctl.snapshots.log"):
            manager.create_named(default_vm_config, "s1")
        live.create.assert_called_once_with(default_vm_config.id, "s1")
        offline.create.assert_not_called()

    def test_untracked_vm_with_socket_is_live(self, default_vm_config, socket_dir):
        (socket_dir / f"{default_vm_config.id}.sock").touch()
        live = MagicMock()
        live.restore.return_value = True
        offline = MagicMock()
        manager = self._manager(_idle_supervisor(), socket_dir, live=live, offline=offline)
        assert manager.restore(default_vm_config, "s1") is True
        live.restore.assert_called_once_with(default_vm_config.id, "s1")
        offline.restore.assert_not_called()

    def test_delete_and_list_route_offline(self, default_vm_config, socket_dir):
        offline = MagicMock()
        offline.delete.return_value = True
        offline.list.return_value = [Snapshot("1", "s1")]
        manager = self._manager(_idle_supervisor(), socket_dir, offline=offline)
        assert manager.delete(default_vm_config, "s1") is True
        assert manager.list(default_vm_config) == [Snapshot("1", "s1")]
        offline.delete.assert_called_once_with("/vms/test.qcow2", "s1")

    def test_duplicate_rejected(self, default_vm_config, socket_dir):
        offline = MagicMock()
        offline.list.return_value = [Snapshot("1", "s1")]
        manager = self._manager(_idle_supervisor(), socket_dir, offline=offline)
        with pytest.raises(DuplicateSnapshotError):
            manager.create_named(default_vm_config, "s1")
        offline.create.assert_not_called()

    def test_generated_name_and_rename_callback(self, default_vm_config, socket_dir):
        offline = MagicMock()
        offline.list.return_value = []
        offline.create.return_value = True
        on_rename = MagicMock()
        manager = self._manager(_idle_supervisor(), socket_dir, offline=offline, on_rename=on_rename)
        with patch("qemuctl.snapshots.log"):
            name = manager.create(default_vm_config, "Before upgrade")
        assert re.fullmatch(r"snap-\d{8}-\d{6}", name)
        on_rename.assert_called_once_with(default_vm_config.id, name, "Before upgrade")

    def test_failed_create_skips_callback(self, default_vm_config, socket_dir):
        offline = MagicMock()
        offline.list.return_value = []
        offline.create.return_value = False
        on_rename = MagicMock()
        manager = self._manager(_idle_supervisor(), socket_dir, offline=offline, on_rename=on_rename)
        with patch("qemuctl.snapshots.log"):
            assert manager.create(default_vm_config, "label") is None
        on_rename.assert_not_called()

    def test_no_display_name_skips_callback(self, default_vm_config, socket_dir):
        offline = MagicMock()
        offline.list.return_value = []
        offline.create.return_value = True
        on_rename = MagicMock()
        manager = self._manager(_idle_supervisor(), socket_dir, offline=offline, on_rename=on_rename)
        with patch("qemuctl.snapshots.log"):
            assert manager.create(default_vm_config) is not None
        on_rename.assert_not_called()


class TestModeTransparency:
    """The same sequence of operations yields the same names in both modes."""

    def _run(self, manager, cfg):
        with patch("qemuctl.snapshots.log"), patch("qemuctl.images.log"):
            manager.create_named(cfg, "base")
            manager.create_named(cfg, "second")
            manager.delete(cfg, "base")
            manager.create_named(cfg, "third")
            return [s.name for s in manager.list(cfg)]

    def test_live_and_offline_agree(self, default_vm_config, socket_dir, fake_engine, fake_qemu_img):
        socket = socket_dir / "live.sock"
        socket.touch()
        live_manager = SnapshotManager(
            _idle_supervisor(),
            LiveSnapshotService(MonitorClient(runner=fake_engine), socket_path_for=lambda vm_id: str(socket)),
            MagicMock(),
            socket_path_for=lambda vm_id: str(socket),
        )
        offline_manager = SnapshotManager(
            _idle_supervisor(),
            MagicMock(),
            ImageSnapshotService(runner=fake_qemu_img),
            socket_path_for=lambda vm_id: str(socket_dir / "absent.sock"),
        )
        live_names = self._run(live_manager, default_vm_config)
        offline_names = self._run(offline_manager, default_vm_config)
        assert live_names == offline_names == ["second", "third"]
