"""Shared test fixtures: machine configs, a fake QEMU process and a fake monitor."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from qemuctl.models import Architecture, DisplayMode, VMConfig


class FakeProcess:
    """Stands in for subprocess.Popen; exits only when told to."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: Optional[int] = None
        self.killed = False
        self._exited = threading.Event()

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("qemu-system", timeout)
        return self.returncode

    def exit(self, code: int = 0) -> None:
        self.returncode = code
        self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


BANNER = "QEMU 8.2.0 monitor - type 'help' for more information\r\n"


class FakeEngine:
    """Emulates the HMP console behind the socat relay.

    ``memory`` is a sentinel for guest state: ``savevm`` captures it and
    ``loadvm`` puts it back.
    """

    def __init__(self) -> None:
        self.memory = ""
        self.paused = False
        self.snapshots: Dict[str, str] = {}
        self.commands: List[str] = []
        self.quit_requested = False
        self.unpaused_saves = 0
        self.fail_savevm = False

    def _reply(self, command: str) -> str:
        if command == "stop":
            self.paused = True
            return ""
        if command == "cont":
            self.paused = False
            return ""
        if command == "quit":
            self.quit_requested = True
            return ""
        if command == "info status":
            return "VM status: paused" if self.paused else "VM status: running"
        if command.startswith("savevm "):
            name = command.split(" ", 1)[1]
            if self.fail_savevm:
                return "Error: Device 'sata0-0-0' is writable but does not support snapshots"
            if not self.paused:
                self.unpaused_saves += 1
            self.snapshots[name] = self.memory
            return ""
        if command.startswith("loadvm "):
            name = command.split(" ", 1)[1]
            if name not in self.snapshots:
                return f"Error: Snapshot '{name}' does not exist in one or more devices"
            self.memory = self.snapshots[name]
            return ""
        if command.startswith("delvm "):
            name = command.split(" ", 1)[1]
            if self.snapshots.pop(name, None) is None:
                return f"Error: Snapshot '{name}' not found"
            return ""
        if command == "info snapshots":
            if not self.snapshots:
                return "There is no snapshot available."
            rows = [
                "List of snapshots present on all disks:",
                "ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT",
            ]
            for name in self.snapshots:
                rows.append(f"--        {name:<17} 1.2 MiB 2024-01-15 10:30:45 00:00:01.000")
            return "\r\n".join(rows)
        return f"unknown command: '{command.split()[0]}'"

    @staticmethod
    def echo(command: str) -> str:
        """Readline redraw after each keystroke: back over the old buffer, print it, erase the rest."""
        out = ""
        for i in range(len(command)):
            out += "\x1b[D" * i + command[: i + 1] + "\x1b[K"
        return out

    def __call__(self, cmd, input="", **kwargs) -> subprocess.CompletedProcess:
        if self.quit_requested:
            # QEMU is gone; socat cannot connect any more.
            return subprocess.CompletedProcess(
                args=cmd, returncode=1, stdout="", stderr="socat: connect(): Connection refused"
            )
        command = input.strip()
        self.commands.append(command)
        reply = self._reply(command)
        out = f"{BANNER}(qemu) {self.echo(command)}\r\n"
        if reply:
            out += reply + "\r\n"
        out += "(qemu) "
        return subprocess.CompletedProcess(args=cmd, returncode=0, stdout=out, stderr="")


class FakeQemuImg:
    """Emulates `qemu-img snapshot` and `qemu-img create` against in-memory disks."""

    def __init__(self) -> None:
        self.disks: Dict[str, List[str]] = {}
        self.calls: List[List[str]] = []

    def _result(self, cmd, returncode: int = 0, stdout: str = "", stderr: str = ""):
        return subprocess.CompletedProcess(args=cmd, returncode=returncode, stdout=stdout, stderr=stderr)

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        args = cmd[1:]
        if args[0] == "create":
            self.disks[args[3]] = []
            return self._result(cmd, stdout=f"Formatting '{args[3]}', fmt=qcow2 size={args[4]}")
        flag = args[1]
        if flag == "-l":
            names = self.disks.get(args[2], [])
            if not names:
                return self._result(cmd)
            rows = [
                "Snapshot list:",
                "ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT",
            ]
            for idx, name in enumerate(names, start=1):
                rows.append(f"{idx:<9} {name:<17}     0 B 2024-01-15 10:30:45 00:00:00.000          0")
            return self._result(cmd, stdout="\n".join(rows) + "\n")
        name, disk = args[2], args[3]
        names = self.disks.setdefault(disk, [])
        if flag == "-c":
            names.append(name)
            return self._result(cmd)
        if name not in names:
            return self._result(
                cmd, returncode=1, stderr=f"qemu-img: Could not find snapshot '{name}' in {disk}"
            )
        if flag == "-d":
            names.remove(name)
        return self._result(cmd)


@pytest.fixture
def default_vm_config() -> VMConfig:
    """Return a minimal x86_64 VMConfig."""
    return VMConfig(
        id="0b6e4f2a-3c1d-4e5f-8a9b-1c2d3e4f5a6b",
        name="test-vm",
        arch=Architecture.X86_64,
        memory_mb=4096,
        cpus=2,
        disk_image_path="/vms/test.qcow2",
        display=DisplayMode.NONE,
    )


@pytest.fixture
def fake_process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture
def make_process():
    """Factory for FakeProcess handles."""
    return FakeProcess


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_qemu_img() -> FakeQemuImg:
    return FakeQemuImg()


@pytest.fixture
def socket_dir(tmp_path) -> Path:
    path = tmp_path / "sockets"
    path.mkdir()
    return path


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that load_settings() reads."""
    for key in (
        "QEMU_BIN_DIR",
        "QEMU_IMG",
        "QEMU_AARCH64_FIRMWARE",
        "MONITOR_RELAY",
        "MONITOR_TIMEOUT",
        "STOP_TIMEOUT",
        "STOP_GRACE",
        "QEMU_ACCEL",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def readline_echo():
    """How the monitor echoes a typed command."""
    return FakeEngine.echo
