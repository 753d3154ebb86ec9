"""qemu-img wrappers: disk creation and offline snapshots."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from qemuctl.constants import IMAGE_HEADER_PREFIXES, IMAGE_MIN_COLUMNS, SIZE_UNITS
from qemuctl.exceptions import ManagerError, ToolExitError
from qemuctl.models import Snapshot
from qemuctl.utils import ensure_directory, expand_path, log, parse_snapshot_timestamp, validate_disk_size


def parse_image_snapshots(output: str) -> List[Snapshot]:
    """Parse ``qemu-img snapshot -l``.

    Format: ID  TAG  VM_SIZE  DATE  VM_CLOCK [ICOUNT]. Newer releases print
    the size as two tokens ("1.2 GiB"), older ones as one ("1.2G").
    """
    snapshots: List[Snapshot] = []
    for line in output.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith(IMAGE_HEADER_PREFIXES):
            continue
        columns = trimmed.split()
        if len(columns) < IMAGE_MIN_COLUMNS:
            log("DEBUG", f"Skipping snapshot line: {trimmed!r}")
            continue

        vm_size: Optional[str] = columns[2] if len(columns) > 2 else None
        date_idx = 3
        if len(columns) > 3 and columns[3] in SIZE_UNITS:
            vm_size = f"{columns[2]}{columns[3]}"
            date_idx = 4

        date = None
        if len(columns) >= date_idx + 2:
            date = parse_snapshot_timestamp(columns[date_idx], columns[date_idx + 1])

        snapshots.append(Snapshot(id=columns[0], name=columns[1], date=date, vm_size=vm_size))
    return snapshots


class ImageSnapshotService:
    """Snapshots stored inside a qcow2 image, for VMs that are not running."""

    def __init__(
        self,
        qemu_img: str = "qemu-img",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.qemu_img = qemu_img
        self._runner = runner

    def run_qemu_img(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.qemu_img, *args]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        result = self._runner(cmd, capture_output=True, text=True, check=False)
        if check and result.returncode != 0:
            raise ToolExitError(cmd, result.returncode, (result.stderr or "").strip())
        return result

    def _snapshot_op(self, flag: str, name: str, disk_path: str) -> bool:
        try:
            self.run_qemu_img(["snapshot", flag, name, expand_path(disk_path)])
        except ToolExitError as exc:
            log("WARN", str(exc))
            return False
        except OSError as exc:
            log("WARN", f"Could not run {self.qemu_img}: {exc}")
            return False
        return True

    def create(self, disk_path: str, name: str) -> bool:
        return self._snapshot_op("-c", name, disk_path)

    def restore(self, disk_path: str, name: str) -> bool:
        return self._snapshot_op("-a", name, disk_path)

    def delete(self, disk_path: str, name: str) -> bool:
        return self._snapshot_op("-d", name, disk_path)

    def list(self, disk_path: str) -> List[Snapshot]:
        try:
            result = self.run_qemu_img(["snapshot", "-l", expand_path(disk_path)])
        except ToolExitError as exc:
            log("WARN", str(exc))
            return []
        except OSError as exc:
            log("WARN", f"Could not run {self.qemu_img}: {exc}")
            return []
        return parse_image_snapshots(result.stdout or "")

    def create_disk(self, path: str, size: str) -> bool:
        """Create an empty qcow2 image (``size`` like ``64G``)."""
        try:
            validate_disk_size(size)
        except ManagerError as exc:
            log("ERROR", str(exc))
            return False
        target = Path(expand_path(path))
        ensure_directory(target.parent)
        try:
            self.run_qemu_img(["create", "-f", "qcow2", str(target), size])
        except ToolExitError as exc:
            log("ERROR", str(exc))
            return False
        except OSError as exc:
            log("ERROR", f"Could not run {self.qemu_img}: {exc}")
            return False
        log("SUCCESS", f"Created {size} disk at {target}")
        return True
