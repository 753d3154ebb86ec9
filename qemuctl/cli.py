"""CLI entry points for qemuctl."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import List, Optional

from qemuctl.config import (
    find_machine,
    forget_snapshot_name,
    list_machines,
    load_settings,
    load_snapshot_names,
    record_snapshot_name,
)
from qemuctl.controller import VMController
from qemuctl.exceptions import ManagerError
from qemuctl.models import VMConfig, VMState
from qemuctl.utils import log


def show_config(cfg: VMConfig) -> None:
    """Print the resolved machine definition."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if hasattr(value, "value"):
            value = value.value
        print(f"  {field.name}: {value}")


def list_vms(controller: VMController) -> None:
    machines = list_machines(controller.settings.machines_dir)
    if not machines:
        log("WARN", f"No machines found in {controller.settings.machines_dir}")
        return
    max_name = max(len(cfg.name) for _, cfg in machines)
    for _, cfg in machines:
        state = controller.state(cfg).value
        print(f"  {cfg.name:<{max_name}}  {state:<8}  ({cfg.arch.display_name}, id={cfg.id})")


def print_snapshots(controller: VMController, path: Path, cfg: VMConfig) -> None:
    snapshots = controller.list_snapshots(cfg)
    if not snapshots:
        log("INFO", f"No snapshots for {cfg.name}")
        return
    display_names = load_snapshot_names(path)
    for snap in snapshots:
        when = snap.date.strftime("%Y-%m-%d %H:%M:%S") if snap.date else "-"
        label = display_names.get(snap.name, "")
        suffix = f"  \"{label}\"" if label else ""
        print(f"  {snap.name:<24} {snap.vm_size or '-':>10}  {when}{suffix}")


def run_foreground(controller: VMController, cfg: VMConfig) -> int:
    """Start the VM and supervise it until QEMU exits."""
    stop_requested = False

    def _request_stop(signum, frame):
        nonlocal stop_requested
        log("INFO", f"{signal.Signals(signum).name} received, shutting down VM")
        stop_requested = True

    controller.start(cfg)
    prev_sigterm = signal.signal(signal.SIGTERM, _request_stop)
    prev_sigint = signal.signal(signal.SIGINT, _request_stop)
    try:
        while not controller.supervisor.wait_for_exit(cfg.id, timeout=1.0):
            if stop_requested:
                controller.stop(cfg)
                break
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)
    return 1 if controller.supervisor.state(cfg.id) is VMState.CRASHED else 0


def _snapshot_command(controller: VMController, args, path: Path, cfg: VMConfig) -> int:
    if args.action == "list":
        print_snapshots(controller, path, cfg)
        return 0
    if args.action == "create":
        if args.display_name:
            internal = controller.create_snapshot(cfg, args.display_name)
            if internal is None:
                return 1
            print(internal)
            return 0
        if not args.name:
            log("ERROR", "snapshot create needs a name or --display-name")
            return 2
        return 0 if controller.create_named_snapshot(cfg, args.name) else 1
    if not args.name:
        log("ERROR", f"snapshot {args.action} needs a snapshot name")
        return 2
    if args.action == "restore":
        ok = controller.restore_snapshot(cfg, args.name)
    else:
        ok = controller.delete_snapshot(cfg, args.name)
        if ok:
            forget_snapshot_name(path, args.name)
    if ok:
        log("SUCCESS", f"Snapshot '{args.name}' {args.action}d")
    else:
        log("ERROR", f"Snapshot {args.action} failed for '{args.name}'")
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qemuctl", description="Launch and snapshot QEMU virtual machines")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List machine definitions and their state")
    for name, help_text in (
        ("show", "Show the resolved machine definition"),
        ("args", "Print the QEMU command line"),
        ("start", "Start the VM and stay attached until it exits"),
        ("stop", "Quit the VM (force kill after STOP_TIMEOUT)"),
        ("status", "Query the VM status over the monitor"),
        ("pause", "Pause the guest"),
        ("resume", "Resume the guest"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("vm", help="Machine file, id or name")

    snap = sub.add_parser("snapshot", help="Manage snapshots (live or on the disk image)")
    snap.add_argument("action", choices=["list", "create", "restore", "delete"])
    snap.add_argument("vm", help="Machine file, id or name")
    snap.add_argument("name", nargs="?", help="Snapshot name")
    snap.add_argument("--display-name", help="Generate a snapshot name and record this label for it")

    disk = sub.add_parser("disk", help="Disk image helpers")
    disk.add_argument("action", choices=["create"])
    disk.add_argument("path")
    disk.add_argument("size", help="Size such as 64G")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
        if args.command == "list":
            list_vms(VMController(settings))
            return 0
        if args.command == "disk":
            return 0 if VMController(settings).create_disk(args.path, args.size) else 1

        path, cfg = find_machine(args.vm, settings.machines_dir)
        controller = VMController(
            settings,
            on_rename=lambda vm_id, internal, display: record_snapshot_name(path, internal, display),
        )

        if args.command == "show":
            show_config(cfg)
            return 0
        if args.command == "args":
            print(" ".join(controller.command_line(cfg)))
            return 0
        if args.command == "start":
            return run_foreground(controller, cfg)
        if args.command == "stop":
            return 0 if controller.stop(cfg) else 1
        if args.command == "status":
            status = controller.status(cfg)
            if status is None:
                log("INFO", f"VM {cfg.name} is not running")
                return 1
            print(status)
            return 0
        if args.command == "pause":
            return 0 if controller.pause(cfg) else 1
        if args.command == "resume":
            return 0 if controller.resume(cfg) else 1
        return _snapshot_command(controller, args, path, cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
