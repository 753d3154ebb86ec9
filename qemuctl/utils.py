"""Utility functions for qemuctl."""

from __future__ import annotations

import os
import platform
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from qemuctl.constants import (
    _LOG_VERBOSE,
    AARCH64_FIRMWARE_CANDIDATES,
    ARCH_PROFILES,
    DEFAULT_AARCH64_FIRMWARE,
    DISK_SIZE_RE,
    QEMU_BIN_DIRS,
    SNAPSHOT_DATE_FORMAT,
    SOCKET_DIR,
    SOCKET_PREFIX,
    SOCKET_SUFFIX,
    TRUTHY,
)
from qemuctl.exceptions import ManagerError
from qemuctl.models import Architecture


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ManagerError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def expand_path(path: Union[str, Path]) -> str:
    """Expand a leading ``~`` and return an absolute path string."""
    return os.path.abspath(os.path.expanduser(str(path)))


def monitor_socket_path(vm_id: str, base_dir: Optional[Path] = None) -> str:
    """Return the monitor socket path for a VM; stable across restarts."""
    base = Path(base_dir) if base_dir is not None else SOCKET_DIR
    return str(base / f"{SOCKET_PREFIX}{vm_id}{SOCKET_SUFFIX}")


def remove_stale_socket(path: Union[str, Path]) -> bool:
    """Delete a leftover socket file; returns True if something was removed."""
    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return False
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log("WARN", f"Failed to remove stale socket {target}: {exc}")
        return False
    log("DEBUG", f"Removed stale socket {target}")
    return True


def parse_snapshot_timestamp(date: str, clock: str) -> Optional[datetime]:
    try:
        return datetime.strptime(f"{date} {clock}", SNAPSHOT_DATE_FORMAT)
    except ValueError:
        return None


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def resolve_accelerator(arch: Architecture) -> str:
    """Pick a hardware accelerator when the host can run the guest natively."""
    host = platform.machine().lower()
    if host not in ARCH_PROFILES[arch]["host_machines"]:
        return "tcg"
    if platform.system() == "Darwin":
        return "hvf"
    if kvm_available():
        return "kvm"
    return "tcg"


def resolve_engine_binary(arch: Architecture, search_dirs: Iterable[Path] = QEMU_BIN_DIRS) -> Optional[str]:
    """Locate qemu-system-<arch> in the configured directories, then on PATH."""
    binary = ARCH_PROFILES[arch]["binary"]
    for directory in search_dirs:
        candidate = Path(directory) / binary
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return shutil.which(binary)


def find_aarch64_firmware(override: Optional[str] = None) -> str:
    """Return the first UEFI image that exists, or the Homebrew default."""
    if override:
        return expand_path(override)
    for candidate in AARCH64_FIRMWARE_CANDIDATES:
        if candidate.exists():
            return str(candidate)
    return str(DEFAULT_AARCH64_FIRMWARE)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
