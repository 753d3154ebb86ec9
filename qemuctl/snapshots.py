"""Snapshot coordination for running and stopped VMs."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from qemuctl.constants import MONITOR_HEADER_PREFIXES, MONITOR_MIN_COLUMNS, SNAPSHOT_NAME_FORMAT
from qemuctl.exceptions import DuplicateSnapshotError
from qemuctl.images import ImageSnapshotService
from qemuctl.models import Snapshot, VMConfig
from qemuctl.monitor import MonitorClient, strip_control_sequences
from qemuctl.utils import log, monitor_socket_path, parse_snapshot_timestamp


def parse_monitor_snapshots(output: str) -> List[Snapshot]:
    """Parse the table printed by ``info snapshots``.

    Columns: ID TAG SIZE UNIT DATE TIME [VM_CLOCK [ICOUNT]]. Lines with fewer
    columns are dropped so a partial listing still comes back.
    """
    snapshots: List[Snapshot] = []
    for line in strip_control_sequences(output).split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith(MONITOR_HEADER_PREFIXES):
            continue
        columns = trimmed.split()
        if len(columns) < MONITOR_MIN_COLUMNS:
            log("DEBUG", f"Skipping snapshot line: {trimmed!r}")
            continue
        snapshots.append(
            Snapshot(
                id=columns[0],
                name=columns[1],
                date=parse_snapshot_timestamp(columns[4], columns[5]),
                vm_size=f"{columns[2]}{columns[3]}",
            )
        )
    return snapshots


class LiveSnapshotService:
    """Snapshots of a running guest (memory + disk) through the monitor."""

    def __init__(
        self,
        monitor: MonitorClient,
        socket_path_for: Callable[[str], str] = monitor_socket_path,
    ) -> None:
        self.monitor = monitor
        self.socket_path_for = socket_path_for

    def create(self, vm_id: str, name: str) -> bool:
        """Pause, savevm, resume. The guest is resumed whatever savevm did."""
        socket_path = self.socket_path_for(vm_id)
        if self.monitor.pause(socket_path) is None:
            log("WARN", f"Could not pause VM {vm_id}; taking snapshot anyway")
        ok = False
        try:
            response = self.monitor.savevm(socket_path, name)
            ok = response is not None and not response.failed
            if response is not None and response.failed:
                log("WARN", f"savevm {name} on VM {vm_id}: {response.text}")
        finally:
            if self.monitor.resume(socket_path) is None:
                log("ERROR", f"Could not resume VM {vm_id} after snapshot")
        return ok

    def restore(self, vm_id: str, name: str) -> bool:
        response = self.monitor.loadvm(self.socket_path_for(vm_id), name)
        if response is None:
            return False
        if response.failed:
            log("WARN", f"loadvm {name} on VM {vm_id}: {response.text}")
            return False
        return True

    def delete(self, vm_id: str, name: str) -> bool:
        response = self.monitor.delvm(self.socket_path_for(vm_id), name)
        if response is None:
            return False
        if response.failed:
            log("WARN", f"delvm {name} on VM {vm_id}: {response.text}")
            return False
        return True

    def list(self, vm_id: str) -> List[Snapshot]:
        response = self.monitor.info_snapshots(self.socket_path_for(vm_id))
        if response is None:
            return []
        return parse_monitor_snapshots(response.text)


class SnapshotManager:
    """Routes snapshot operations to the live or offline path.

    A VM counts as live when the supervisor tracks it *or* its monitor socket
    exists: the supervisor's table is empty after a restart of this process
    even though QEMU may still be running.
    """

    def __init__(
        self,
        supervisor,
        live: LiveSnapshotService,
        offline: ImageSnapshotService,
        socket_path_for: Callable[[str], str] = monitor_socket_path,
        on_rename: Optional[Callable[[str, str, str], None]] = None,
    ) -> None:
        self.supervisor = supervisor
        self.live = live
        self.offline = offline
        self.socket_path_for = socket_path_for
        self.on_rename = on_rename

    def is_live(self, cfg: VMConfig) -> bool:
        if self.supervisor is not None and self.supervisor.is_running(cfg.id):
            return True
        return Path(self.socket_path_for(cfg.id)).exists()

    def list(self, cfg: VMConfig) -> List[Snapshot]:
        if self.is_live(cfg):
            return self.live.list(cfg.id)
        return self.offline.list(cfg.disk_image_path)

    def create_named(self, cfg: VMConfig, name: str) -> bool:
        if any(snap.name == name for snap in self.list(cfg)):
            raise DuplicateSnapshotError(name)
        if self.is_live(cfg):
            log("INFO", f"Taking live snapshot '{name}' of {cfg.name}")
            ok = self.live.create(cfg.id, name)
        else:
            log("INFO", f"Taking disk snapshot '{name}' of {cfg.name}")
            ok = self.offline.create(cfg.disk_image_path, name)
        if ok:
            log("SUCCESS", f"Snapshot '{name}' created")
        else:
            log("ERROR", f"Snapshot '{name}' failed")
        return ok

    def create(self, cfg: VMConfig, display_name: Optional[str] = None) -> Optional[str]:
        """Create a snapshot with a timestamp-derived name and return that name.

        The display name is never stored here; it is handed to ``on_rename``
        so the owner of the machine definition can record the mapping.
        """
        name = datetime.now().strftime(SNAPSHOT_NAME_FORMAT)
        if not self.create_named(cfg, name):
            return None
        if display_name and self.on_rename is not None:
            self.on_rename(cfg.id, name, display_name)
        return name

    def restore(self, cfg: VMConfig, name: str) -> bool:
        if self.is_live(cfg):
            return self.live.restore(cfg.id, name)
        return self.offline.restore(cfg.disk_image_path, name)

    def delete(self, cfg: VMConfig, name: str) -> bool:
        if self.is_live(cfg):
            return self.live.delete(cfg.id, name)
        return self.offline.delete(cfg.disk_image_path, name)
