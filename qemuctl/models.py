"""Data models for qemuctl."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Architecture(str, Enum):
    AARCH64 = "aarch64"
    X86_64 = "x86_64"
    I386 = "i386"

    @property
    def display_name(self) -> str:
        return {
            Architecture.AARCH64: "ARM 64-bit",
            Architecture.X86_64: "Intel/AMD 64-bit",
            Architecture.I386: "Intel/AMD 32-bit",
        }[self]


class DisplayMode(str, Enum):
    COCOA = "cocoa"
    SPICE = "spice-app"
    VNC = "vnc"
    GTK = "gtk"
    SDL = "sdl"
    NONE = "none"


class VMState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


@dataclass(frozen=True)
class VMConfig:
    """Launch-time snapshot of a machine definition."""

    name: str
    arch: Architecture
    memory_mb: int
    cpus: int
    disk_image_path: str
    display: DisplayMode = DisplayMode.NONE
    iso_path: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class RunningInstance:
    vm_id: str
    process: Any  # subprocess.Popen or a compatible handle
    socket_path: str
    arch: Architecture
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def alive(self) -> bool:
        return self.process.poll() is None


@dataclass(frozen=True)
class Snapshot:
    id: str
    name: str
    date: Optional[datetime] = None
    vm_size: Optional[str] = None
