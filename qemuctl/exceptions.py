"""Custom exceptions for qemuctl."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """A machine definition or setting could not be parsed."""


class SpawnError(ManagerError):
    """QEMU could not be launched (binary missing or exec failed)."""

    def __init__(self, vm_id: str, reason: str):
        self.vm_id = vm_id
        self.reason = reason
        super().__init__(f"Failed to start VM {vm_id}: {reason}")


class AlreadyRunningError(ManagerError):
    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"VM {vm_id} is already running")


class SocketNotFoundError(ManagerError):
    """No monitor socket at the expected path (VM dead or not ready yet)."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"Monitor socket not found: {path}")


class CommandRelayError(ManagerError):
    """The relay process used to reach the monitor socket failed."""


class ToolExitError(ManagerError):
    """qemu-img exited with a non-zero status."""

    def __init__(self, cmd, returncode: int, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"{cmd[0]} exited with status {returncode}{detail}")


class DuplicateSnapshotError(ManagerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Snapshot '{name}' already exists")
