"""Settings and machine-definition loading for qemuctl."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qemuctl.constants import (
    ARCH_ALIASES,
    DEFAULT_MONITOR_TIMEOUT,
    DEFAULT_STOP_GRACE,
    DEFAULT_STOP_TIMEOUT,
    MACHINES_DIR,
    QEMU_BIN_DIRS,
    SOCKET_DIR,
)
from qemuctl.exceptions import ConfigError
from qemuctl.models import Architecture, DisplayMode, VMConfig
from qemuctl.utils import get_env, log, parse_float_env


@dataclass
class Settings:
    bin_dirs: Tuple[Path, ...] = QEMU_BIN_DIRS
    qemu_img: str = "qemu-img"
    aarch64_firmware: Optional[str] = None
    socket_dir: Path = SOCKET_DIR
    machines_dir: Path = MACHINES_DIR
    monitor_relay: str = "socat"
    monitor_timeout: float = DEFAULT_MONITOR_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    stop_grace: float = DEFAULT_STOP_GRACE
    accelerator: Optional[str] = None


def load_settings() -> Settings:
    bin_dir = (get_env("QEMU_BIN_DIR") or "").strip()
    bin_dirs = (Path(bin_dir).expanduser(),) + QEMU_BIN_DIRS if bin_dir else QEMU_BIN_DIRS

    accelerator = (get_env("QEMU_ACCEL") or "").strip().lower() or None
    if accelerator is not None and accelerator not in {"kvm", "hvf", "tcg", "whpx"}:
        raise ConfigError(f"Unsupported QEMU_ACCEL '{accelerator}'. Supported: hvf, kvm, tcg, whpx")

    return Settings(
        bin_dirs=bin_dirs,
        qemu_img=(get_env("QEMU_IMG") or "qemu-img").strip(),
        aarch64_firmware=(get_env("QEMU_AARCH64_FIRMWARE") or "").strip() or None,
        socket_dir=SOCKET_DIR,
        machines_dir=MACHINES_DIR,
        monitor_relay=(get_env("MONITOR_RELAY") or "socat").strip(),
        monitor_timeout=parse_float_env("MONITOR_TIMEOUT", str(DEFAULT_MONITOR_TIMEOUT)),
        stop_timeout=parse_float_env("STOP_TIMEOUT", str(DEFAULT_STOP_TIMEOUT)),
        stop_grace=parse_float_env("STOP_GRACE", str(DEFAULT_STOP_GRACE)),
        accelerator=accelerator,
    )


def parse_architecture(raw: str) -> Architecture:
    key = str(raw).strip().lower()
    key = ARCH_ALIASES.get(key, key)
    try:
        return Architecture(key)
    except ValueError:
        supported = ", ".join(a.value for a in Architecture)
        raise ConfigError(f"Unsupported architecture '{raw}'. Supported: {supported}")


def parse_display(raw: str) -> DisplayMode:
    key = str(raw).strip().lower()
    try:
        return DisplayMode(key)
    except ValueError:
        supported = ", ".join(d.value for d in DisplayMode)
        raise ConfigError(f"Unsupported display mode '{raw}'. Supported: {supported}")


def _positive_int(data: dict, key: str, source: Path) -> int:
    raw = data.get(key)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{source}: {key} must be an integer (got '{raw}')")
    if value < 1:
        raise ConfigError(f"{source}: {key} must be >= 1 (got {value})")
    return value


def vm_config_from_dict(data: dict, source: Path = Path("<memory>")) -> VMConfig:
    for key in ("id", "name", "architecture", "memoryMB", "cpuCores"):
        if key not in data:
            raise ConfigError(f"{source}: missing required key '{key}'")

    iso_path = data.get("isoPath")
    if iso_path is not None:
        iso_path = str(iso_path).strip() or None

    return VMConfig(
        id=str(data["id"]),
        name=str(data["name"]),
        arch=parse_architecture(data["architecture"]),
        memory_mb=_positive_int(data, "memoryMB", source),
        cpus=_positive_int(data, "cpuCores", source),
        disk_image_path=str(data.get("diskImagePath") or ""),
        iso_path=iso_path,
        display=parse_display(data.get("displayMode", "none")),
    )


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}")
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a YAML mapping, got {type(data).__name__}")
    return data


def load_vm_config(path: Path) -> VMConfig:
    if not path.exists():
        raise ConfigError(f"Machine definition missing: {path}")
    return vm_config_from_dict(_read_yaml(path), source=path)


def load_snapshot_names(path: Path) -> Dict[str, str]:
    """Internal snapshot name -> display name, as recorded in the machine file."""
    names = _read_yaml(path).get("snapshotNames") or {}
    if not isinstance(names, dict):
        return {}
    return {str(k): str(v) for k, v in names.items()}


def _update_snapshot_names(path: Path, internal: str, display: Optional[str]) -> None:
    data = _read_yaml(path)
    names = data.get("snapshotNames")
    if not isinstance(names, dict):
        names = {}
    if display is None:
        if internal not in names:
            return
        names.pop(internal)
    else:
        names[internal] = display
    data["snapshotNames"] = names
    path.write_text(yaml.safe_dump(data, sort_keys=False))


def record_snapshot_name(path: Path, internal: str, display: str) -> None:
    _update_snapshot_names(path, internal, display)


def forget_snapshot_name(path: Path, internal: str) -> None:
    _update_snapshot_names(path, internal, None)


def list_machines(directory: Optional[Path] = None) -> List[Tuple[Path, VMConfig]]:
    directory = directory or MACHINES_DIR
    if not directory.is_dir():
        return []
    machines: List[Tuple[Path, VMConfig]] = []
    for path in sorted(directory.glob("*.yaml")):
        try:
            machines.append((path, load_vm_config(path)))
        except ConfigError as exc:
            log("WARN", f"Skipping {path.name}: {exc}")
    return machines


def find_machine(ref: str, directory: Optional[Path] = None) -> Tuple[Path, VMConfig]:
    """Resolve a machine by file path, id or name."""
    candidate = Path(ref).expanduser()
    if candidate.suffix in (".yaml", ".yml") and candidate.exists():
        return candidate, load_vm_config(candidate)

    machines = list_machines(directory)
    for path, cfg in machines:
        if cfg.id == ref or cfg.name == ref or path.stem == ref:
            return path, cfg
    available = "\n    ".join(cfg.name for _, cfg in machines) or "(none)"
    raise ConfigError(
        f"Unknown machine '{ref}'.\n"
        f"  Available machines:\n"
        f"    {available}"
    )
