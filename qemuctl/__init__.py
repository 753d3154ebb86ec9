"""qemuctl package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "controller",
    "exceptions",
    "hardware",
    "images",
    "models",
    "monitor",
    "snapshots",
    "supervisor",
    "utils",
]
