"""Global constants and path configuration for qemuctl."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

from qemuctl.models import Architecture, DisplayMode

# Monitor sockets live in a fixed directory so the path can be recomputed
# after a restart while QEMU keeps running.
SOCKET_DIR = Path(os.environ.get("QEMUCTL_SOCKET_DIR") or tempfile.gettempdir())
SOCKET_PREFIX = "qemuctl-"
SOCKET_SUFFIX = ".sock"

MACHINES_DIR = Path(
    os.environ.get("QEMUCTL_MACHINES_DIR") or Path.home() / ".config" / "qemuctl" / "machines"
)

DEFAULT_AARCH64_FIRMWARE = Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd")
AARCH64_FIRMWARE_CANDIDATES = (
    DEFAULT_AARCH64_FIRMWARE,
    Path("/usr/local/share/qemu/edk2-aarch64-code.fd"),
    Path("/usr/share/qemu/edk2-aarch64-code.fd"),
    Path("/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
    Path("/usr/share/edk2/aarch64/QEMU_EFI.fd"),
    Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
)

QEMU_BIN_DIRS = (
    Path("/opt/homebrew/bin"),
    Path("/usr/local/bin"),
    Path("/usr/bin"),
)

TRUTHY = {"1", "true", "yes", "on"}

ARCH_ALIASES = {
    "arm64": "aarch64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86": "i386",
    "i686": "i386",
}

# One entry per Architecture member; hardware.py and supervisor.py read only
# from this table.
ARCH_PROFILES = {
    Architecture.AARCH64: {
        "binary": "qemu-system-aarch64",
        "machine": "virt,highmem=on",
        "accel": "hvf",
        "cpu": "host",
        "tcg_fallback": "max",
        "firmware": True,
        "gpu": "virtio-gpu-pci",
        "disk_interface": "virtio",
        "nic_model": "virtio-net-pci",
        "usb_controller": "qemu-xhci,id=usb",
        "host_machines": ("aarch64", "arm64"),
    },
    Architecture.X86_64: {
        "binary": "qemu-system-x86_64",
        "machine": "q35",
        "accel": "tcg",
        "cpu": "max",
        "tcg_fallback": "max",
        "firmware": False,
        "gpu": None,
        "disk_interface": "virtio",
        "nic_model": "virtio-net-pci",
        "usb_controller": None,
        "host_machines": ("x86_64", "amd64"),
    },
    Architecture.I386: {
        "binary": "qemu-system-i386",
        "machine": "pc",
        "accel": "tcg",
        "cpu": "pentium3",
        "tcg_fallback": "pentium3",
        "firmware": False,
        "gpu": None,
        # Legacy guests (e.g. Windows XP) ship no virtio drivers.
        "disk_interface": "ide",
        "nic_model": "rtl8139",
        "usb_controller": None,
        "host_machines": ("x86_64", "amd64", "i386", "i686"),
    },
}

_missing_profiles = set(Architecture) - set(ARCH_PROFILES)
if _missing_profiles:  # pragma: no cover
    raise RuntimeError(f"No hardware profile for: {sorted(a.value for a in _missing_profiles)}")

DISPLAY_ARGS = {
    DisplayMode.COCOA: "cocoa",
    DisplayMode.SPICE: "spice-app",
    DisplayMode.VNC: "vnc=127.0.0.1:0",
    DisplayMode.GTK: "gtk",
    DisplayMode.SDL: "sdl",
    DisplayMode.NONE: "none",
}

BOOT_ORDER = "order=dc"
NETDEV_ID = "net0"

DEFAULT_STOP_TIMEOUT = 1.0
DEFAULT_STOP_GRACE = 2.0
DEFAULT_MONITOR_TIMEOUT = 0.5
MONITOR_POLL_INTERVAL = 0.1

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")

# One terminal token: a CSI sequence (parameters, final byte), another
# two-byte escape, or a single character. The monitor redraws its readline
# echo after every keystroke with cursor-left moves and an erase-line.
TERMINAL_TOKEN_RE = re.compile(r"\x1b\[([0-?]*)[ -/]*([@-~])|\x1b[@-Z\\-_]|[\s\S]")
CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

MONITOR_PROMPT = "(qemu)"
MONITOR_BANNER_RE = re.compile(r"^QEMU \S+ monitor - type 'help' for more information")
MONITOR_ERROR_MARKERS = (
    "Error",
    "error:",
    "unknown command",
    "does not exist",
    "not found",
    "No block device",
    "can't",
    "could not",
)
MONITOR_HEADER_PREFIXES = (
    "List of snapshots",
    "ID",
    "There is no snapshot",
    "Snapshot list",
    "QEMU",
    MONITOR_PROMPT,
)
MONITOR_MIN_COLUMNS = 6

IMAGE_HEADER_PREFIXES = ("Snapshot", "ID")
IMAGE_MIN_COLUMNS = 2
SIZE_UNITS = {"B", "KiB", "MiB", "GiB", "TiB", "K", "M", "G", "T"}

SNAPSHOT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
SNAPSHOT_NAME_FORMAT = "snap-%Y%m%d-%H%M%S"
