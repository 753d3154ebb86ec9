"""QEMU process lifecycle for qemuctl."""

from __future__ import annotations

import queue
import subprocess
import threading
import time
from typing import Callable, Dict, List, NamedTuple, Optional

from qemuctl.constants import ARCH_PROFILES, DEFAULT_STOP_GRACE, DEFAULT_STOP_TIMEOUT
from qemuctl.exceptions import AlreadyRunningError, SpawnError
from qemuctl.hardware import build_qemu_args
from qemuctl.models import RunningInstance, VMConfig, VMState
from qemuctl.monitor import MonitorClient
from qemuctl.utils import log, monitor_socket_path, remove_stale_socket, resolve_accelerator, resolve_engine_binary


class ExitEvent(NamedTuple):
    vm_id: str
    process: object
    returncode: Optional[int]


class ProcessSupervisor:
    """Owns the vm_id -> running QEMU table.

    Exit notifications come from one watcher thread per process and are
    queued; they only touch the table when the control-plane thread calls
    ``process_events`` (every public method does so first).
    """

    def __init__(
        self,
        monitor: MonitorClient,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        binary_for: Callable = resolve_engine_binary,
        socket_path_for: Callable[[str], str] = monitor_socket_path,
        accelerator_for: Callable = resolve_accelerator,
        firmware: Optional[str] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        stop_grace: float = DEFAULT_STOP_GRACE,
        on_exit: Optional[Callable[[str, Optional[int], VMState], None]] = None,
    ) -> None:
        self.monitor = monitor
        self._spawn = spawn
        self._binary_for = binary_for
        self.socket_path_for = socket_path_for
        self._accelerator_for = accelerator_for
        self.firmware = firmware
        self.stop_timeout = stop_timeout
        self.stop_grace = stop_grace
        self.on_exit = on_exit
        self._lock = threading.RLock()
        self._instances: Dict[str, RunningInstance] = {}
        self._states: Dict[str, VMState] = {}
        self._events: "queue.Queue[ExitEvent]" = queue.Queue()

    # --- queries ---

    def state(self, vm_id: str) -> VMState:
        self.process_events()
        with self._lock:
            return self._states.get(vm_id, VMState.STOPPED)

    def get(self, vm_id: str) -> Optional[RunningInstance]:
        self.process_events()
        with self._lock:
            return self._instances.get(vm_id)

    def running_ids(self) -> List[str]:
        self.process_events()
        with self._lock:
            return [vm_id for vm_id, inst in self._instances.items() if inst.alive()]

    def is_running(self, vm_id: str) -> bool:
        self.process_events()
        with self._lock:
            instance = self._instances.get(vm_id)
            return instance is not None and instance.alive()

    # --- lifecycle ---

    def build_command(self, cfg: VMConfig, binary: Optional[str] = None) -> List[str]:
        if binary is None:
            binary = self._binary_for(cfg.arch) or ARCH_PROFILES[cfg.arch]["binary"]
        args = build_qemu_args(
            cfg,
            self.socket_path_for(cfg.id),
            accelerator=self._accelerator_for(cfg.arch),
            firmware=self.firmware,
        )
        return [binary, *args]

    def start(self, cfg: VMConfig) -> RunningInstance:
        self.process_events()
        with self._lock:
            if cfg.id in self._instances or self._states.get(cfg.id) in (VMState.STARTING, VMState.STOPPING):
                raise AlreadyRunningError(cfg.id)
            self._states[cfg.id] = VMState.STARTING

        try:
            instance = self._launch(cfg)
        except BaseException:
            with self._lock:
                self._states[cfg.id] = VMState.STOPPED
            raise

        with self._lock:
            self._instances[cfg.id] = instance
            self._states[cfg.id] = VMState.RUNNING
        self._watch(instance)
        log("SUCCESS", f"VM {cfg.name} started (PID {instance.pid})")
        return instance

    def _launch(self, cfg: VMConfig) -> RunningInstance:
        socket_path = self.socket_path_for(cfg.id)
        remove_stale_socket(socket_path)

        binary = self._binary_for(cfg.arch)
        if not binary:
            raise SpawnError(cfg.id, f"{ARCH_PROFILES[cfg.arch]['binary']} not found")

        cmd = self.build_command(cfg, binary)
        log("INFO", f"Starting VM {cfg.name} ({cfg.arch.value}, {cfg.memory_mb} MiB, {cfg.cpus} CPUs)")
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            process = self._spawn(cmd, stdin=subprocess.DEVNULL)
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            raise SpawnError(cfg.id, str(exc)) from exc
        return RunningInstance(vm_id=cfg.id, process=process, socket_path=socket_path, arch=cfg.arch)

    def _watch(self, instance: RunningInstance) -> None:
        def _wait() -> None:
            try:
                returncode = instance.process.wait()
            except Exception as exc:  # pragma: no cover
                log("DEBUG", f"Watcher for VM {instance.vm_id} failed: {exc}")
                returncode = None
            self._events.put(ExitEvent(instance.vm_id, instance.process, returncode))

        thread = threading.Thread(target=_wait, name=f"qemu-watch-{instance.vm_id}", daemon=True)
        thread.start()

    def stop(self, vm_id: str, timeout: Optional[float] = None) -> bool:
        """Quit over the monitor, then SIGKILL if QEMU outlives the timeout."""
        self.process_events()
        with self._lock:
            instance = self._instances.get(vm_id)
            if instance is None:
                log("WARN", f"VM {vm_id} is not running")
                return False
            self._states[vm_id] = VMState.STOPPING

        wait = self.stop_timeout if timeout is None else timeout
        if self.monitor.quit(instance.socket_path) is None:
            log("WARN", f"Graceful quit failed for VM {vm_id}")

        try:
            instance.process.wait(timeout=wait)
        except subprocess.TimeoutExpired:
            log("WARN", f"VM {vm_id} didn't stop within {wait}s, force killing")
            try:
                instance.process.kill()
            except OSError:
                pass
            try:
                instance.process.wait(timeout=self.stop_grace)
            except subprocess.TimeoutExpired:
                log("ERROR", f"VM {vm_id} (PID {instance.pid}) survived SIGKILL")

        self._forget(vm_id, instance.process, VMState.STOPPED)
        log("INFO", f"VM {vm_id} stopped")
        return True

    def _forget(self, vm_id: str, process, state: VMState) -> bool:
        with self._lock:
            instance = self._instances.get(vm_id)
            if instance is None or instance.process is not process:
                return False
            del self._instances[vm_id]
            self._states[vm_id] = state
            socket_path = instance.socket_path
        remove_stale_socket(socket_path)
        return True

    # --- exit notifications ---

    def _apply(self, event: ExitEvent) -> None:
        with self._lock:
            stopping = self._states.get(event.vm_id) == VMState.STOPPING
        state = VMState.STOPPED if stopping or event.returncode == 0 else VMState.CRASHED
        if not self._forget(event.vm_id, event.process, state):
            return
        if state is VMState.CRASHED:
            log("ERROR", f"VM {event.vm_id} exited unexpectedly (status {event.returncode})")
        else:
            log("INFO", f"VM {event.vm_id} exited")
        if self.on_exit is not None:
            self.on_exit(event.vm_id, event.returncode, state)

    def process_events(self) -> int:
        """Apply queued exit notifications; returns how many were handled."""
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return handled
            self._apply(event)
            handled += 1

    def wait_for_exit(self, vm_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the VM's exit has been applied; False on timeout.

        The timeout is a deadline for the whole call, not per queued event.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.process_events()
            with self._lock:
                if vm_id not in self._instances:
                    return True
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
            try:
                event = self._events.get(timeout=remaining)
            except queue.Empty:
                return False
            self._apply(event)
