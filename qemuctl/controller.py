"""Wiring of supervisor, monitor and snapshot services for qemuctl."""

from __future__ import annotations

import time
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional

from qemuctl.config import Settings
from qemuctl.constants import MONITOR_POLL_INTERVAL
from qemuctl.exceptions import CommandRelayError, SocketNotFoundError
from qemuctl.images import ImageSnapshotService
from qemuctl.models import RunningInstance, Snapshot, VMConfig, VMState
from qemuctl.monitor import MonitorClient
from qemuctl.snapshots import LiveSnapshotService, SnapshotManager
from qemuctl.supervisor import ProcessSupervisor
from qemuctl.utils import (
    find_aarch64_firmware,
    log,
    monitor_socket_path,
    remove_stale_socket,
    resolve_accelerator,
    resolve_engine_binary,
)


class VMController:
    """Single entry point for start/stop/status and snapshots of VMs.

    Components are built from ``settings`` unless passed in, so tests and
    embedding applications can swap any of them.
    """

    def __init__(
        self,
        settings: Settings,
        monitor: Optional[MonitorClient] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        offline: Optional[ImageSnapshotService] = None,
        on_rename: Optional[Callable[[str, str, str], None]] = None,
    ) -> None:
        self.settings = settings
        self.socket_path_for = partial(monitor_socket_path, base_dir=settings.socket_dir)
        self.monitor = monitor or MonitorClient(
            relay=settings.monitor_relay,
            relay_timeout=settings.monitor_timeout,
        )
        if supervisor is None:
            if settings.accelerator:
                accelerator_for = lambda arch: settings.accelerator  # noqa: E731
            else:
                accelerator_for = resolve_accelerator
            supervisor = ProcessSupervisor(
                self.monitor,
                binary_for=partial(resolve_engine_binary, search_dirs=settings.bin_dirs),
                socket_path_for=self.socket_path_for,
                accelerator_for=accelerator_for,
                firmware=find_aarch64_firmware(settings.aarch64_firmware),
                stop_timeout=settings.stop_timeout,
                stop_grace=settings.stop_grace,
            )
        self.supervisor = supervisor
        self.offline = offline or ImageSnapshotService(qemu_img=settings.qemu_img)
        self.live = LiveSnapshotService(self.monitor, self.socket_path_for)
        self.snapshots = SnapshotManager(
            self.supervisor,
            self.live,
            self.offline,
            socket_path_for=self.socket_path_for,
            on_rename=on_rename,
        )

    def socket_path(self, cfg: VMConfig) -> str:
        return self.socket_path_for(cfg.id)

    def command_line(self, cfg: VMConfig) -> List[str]:
        return self.supervisor.build_command(cfg)

    def start(self, cfg: VMConfig) -> RunningInstance:
        return self.supervisor.start(cfg)

    def stop(self, cfg: VMConfig) -> bool:
        if self.supervisor.get(cfg.id) is not None:
            return self.supervisor.stop(cfg.id)
        # Started by an earlier run of this program; only the socket is left.
        socket_path = self.socket_path(cfg)
        if Path(socket_path).exists():
            log("INFO", f"Asking untracked VM {cfg.name} to quit")
            if self.monitor.quit(socket_path) is None:
                return False
            timeout = self.settings.stop_timeout + self.settings.stop_grace
            if not self._wait_until_gone(socket_path, timeout):
                log("WARN", f"VM {cfg.name} still answers its monitor after {timeout:g}s")
                return False
            remove_stale_socket(socket_path)
            return True
        log("WARN", f"VM {cfg.name} is not running")
        return False

    def _wait_until_gone(self, socket_path: str, timeout: float) -> bool:
        """Poll the monitor until the relay can no longer reach QEMU."""
        deadline = time.monotonic() + timeout
        while True:
            try:
                self.monitor.send(socket_path, "info status")
            except (SocketNotFoundError, CommandRelayError):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(MONITOR_POLL_INTERVAL)

    def is_running(self, cfg: VMConfig) -> bool:
        return self.snapshots.is_live(cfg)

    def state(self, cfg: VMConfig) -> VMState:
        state = self.supervisor.state(cfg.id)
        if state in (VMState.STOPPED, VMState.CRASHED) and Path(self.socket_path(cfg)).exists():
            return VMState.RUNNING
        return state

    def status(self, cfg: VMConfig) -> Optional[str]:
        """Raw ``info status`` reply, e.g. ``VM status: paused``."""
        response = self.monitor.status(self.socket_path(cfg))
        return response.text if response is not None else None

    def pause(self, cfg: VMConfig) -> bool:
        return self.monitor.pause(self.socket_path(cfg)) is not None

    def resume(self, cfg: VMConfig) -> bool:
        return self.monitor.resume(self.socket_path(cfg)) is not None

    def list_snapshots(self, cfg: VMConfig) -> List[Snapshot]:
        return self.snapshots.list(cfg)

    def create_snapshot(self, cfg: VMConfig, display_name: Optional[str] = None) -> Optional[str]:
        return self.snapshots.create(cfg, display_name)

    def create_named_snapshot(self, cfg: VMConfig, name: str) -> bool:
        return self.snapshots.create_named(cfg, name)

    def restore_snapshot(self, cfg: VMConfig, name: str) -> bool:
        return self.snapshots.restore(cfg, name)

    def delete_snapshot(self, cfg: VMConfig, name: str) -> bool:
        return self.snapshots.delete(cfg, name)

    def create_disk(self, path: str, size: str) -> bool:
        return self.offline.create_disk(path, size)
