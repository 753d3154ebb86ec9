"""QEMU command-line generation for qemuctl."""

from __future__ import annotations

from typing import List, Optional

from qemuctl.constants import (
    ARCH_PROFILES,
    BOOT_ORDER,
    DEFAULT_AARCH64_FIRMWARE,
    DISPLAY_ARGS,
    NETDEV_ID,
)
from qemuctl.models import VMConfig
from qemuctl.utils import expand_path


def _cpu_model(profile: dict, accelerator: str) -> str:
    # "-cpu host" only works with a hardware accelerator.
    if accelerator == "tcg":
        return profile["tcg_fallback"]
    return profile["cpu"]


def build_qemu_args(
    cfg: VMConfig,
    socket_path: str,
    accelerator: Optional[str] = None,
    firmware: Optional[str] = None,
) -> List[str]:
    """Compile a machine definition into QEMU arguments (binary not included).

    Paths are passed through unchecked apart from ``~`` expansion. No audio
    device is ever added: some audio models make ``savevm`` fail with a
    migration blocker.
    """
    profile = ARCH_PROFILES[cfg.arch]
    accel = accelerator or profile["accel"]

    args: List[str] = ["-m", f"{cfg.memory_mb}M"]

    args += ["-machine", profile["machine"]]
    args += ["-accel", accel]
    args += ["-cpu", _cpu_model(profile, accel)]
    args += ["-smp", str(cfg.cpus)]
    if profile["firmware"]:
        args += ["-bios", expand_path(firmware or DEFAULT_AARCH64_FIRMWARE)]
    if profile["gpu"]:
        args += ["-device", profile["gpu"]]

    args += ["-display", DISPLAY_ARGS[cfg.display]]

    if cfg.disk_image_path:
        disk = expand_path(cfg.disk_image_path)
        args += ["-drive", f"file={disk},format=qcow2,if={profile['disk_interface']}"]

    if cfg.iso_path:
        args += ["-cdrom", expand_path(cfg.iso_path)]

    args += ["-device", f"{profile['nic_model']},netdev={NETDEV_ID}"]
    args += ["-netdev", f"user,id={NETDEV_ID}"]

    if profile["usb_controller"]:
        args += ["-device", profile["usb_controller"]]
    else:
        args += ["-usb"]
    args += ["-device", "usb-tablet"]
    args += ["-device", "usb-kbd"]

    args += ["-boot", BOOT_ORDER]

    args += ["-monitor", f"unix:{socket_path},server,nowait"]
    return args
