"""Human monitor (HMP) client for qemuctl.

QEMU is started with ``-monitor unix:<path>,server,nowait``. The monitor is
an interactive console: no framing, no status codes, and the reply is
whatever gets printed before the next ``(qemu)`` prompt. Our own command
comes back first as a readline echo that is redrawn after every keystroke
(``ESC[D`` per character already shown, the whole buffer, then ``ESC[K``).
Each request is relayed through ``socat`` which exits once stdin is drained
and the relay timeout expires.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from qemuctl.constants import (
    CONTROL_CHAR_RE,
    DEFAULT_MONITOR_TIMEOUT,
    MONITOR_BANNER_RE,
    MONITOR_ERROR_MARKERS,
    MONITOR_PROMPT,
    TERMINAL_TOKEN_RE,
)
from qemuctl.exceptions import CommandRelayError, SocketNotFoundError
from qemuctl.utils import log


def _csi_count(params: str) -> int:
    try:
        return max(int(params or "1"), 1)
    except ValueError:
        return 1


def strip_control_sequences(text: str) -> str:
    """Render console output the way a terminal shows it, one string per line.

    Cursor-left/right, erase-line, carriage return and backspace are applied
    to the current line; every other escape or control character is dropped.
    """
    lines: List[str] = []
    line: List[str] = []
    cursor = 0
    for match in TERMINAL_TOKEN_RE.finditer(text):
        token = match.group(0)
        final = match.group(2)
        if final is not None:
            if final == "D":
                cursor = max(cursor - _csi_count(match.group(1)), 0)
            elif final == "C":
                cursor += _csi_count(match.group(1))
            elif final == "K":
                if match.group(1) == "2":
                    line = [" "] * cursor
                else:
                    del line[cursor:]
            continue
        if token.startswith("\x1b"):
            continue
        if token == "\n":
            lines.append("".join(line))
            line, cursor = [], 0
        elif token == "\r":
            cursor = 0
        elif token == "\b":
            cursor = max(cursor - 1, 0)
        elif not CONTROL_CHAR_RE.match(token):
            if cursor > len(line):
                line.extend(" " * (cursor - len(line)))
            if cursor < len(line):
                line[cursor] = token
            else:
                line.append(token)
            cursor += 1
    lines.append("".join(line))
    return "\n".join(lines)


def clean_response(raw: str, command: str = "") -> str:
    """Reduce raw monitor output to the command's reply.

    Lines that start at a prompt hold the echo of what we typed and are never
    part of the reply; the reply starts on the line after it.
    """
    lines: List[str] = []
    for line in strip_control_sequences(raw).split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith(MONITOR_PROMPT):
            continue
        if MONITOR_BANNER_RE.match(stripped):
            continue
        if command and stripped == command.strip():
            continue
        lines.append(stripped)
    return "\n".join(lines)


@dataclass(frozen=True)
class MonitorResponse:
    command: str
    text: str

    @property
    def failed(self) -> bool:
        return any(marker in self.text for marker in MONITOR_ERROR_MARKERS)


class MonitorClient:
    def __init__(
        self,
        relay: str = "socat",
        relay_timeout: float = DEFAULT_MONITOR_TIMEOUT,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.relay = relay
        self.relay_timeout = relay_timeout
        self._runner = runner

    def _relay_cmd(self, socket_path: str) -> List[str]:
        return [self.relay, "-t", str(self.relay_timeout), "-", f"UNIX-CONNECT:{socket_path}"]

    def send(self, socket_path: str, command: str) -> str:
        """Send one command line and return the raw console output."""
        if not Path(socket_path).exists():
            raise SocketNotFoundError(socket_path)

        cmd = self._relay_cmd(socket_path)
        log("DEBUG", f"monitor {socket_path} <- {command}")
        try:
            result = self._runner(
                cmd,
                input=command.rstrip("\n") + "\n",
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise CommandRelayError(f"Could not launch {self.relay}: {exc}") from exc

        if result.returncode != 0:
            detail = (result.stderr or "").strip()
            raise CommandRelayError(
                f"{self.relay} failed talking to {socket_path} (exit {result.returncode})"
                + (f": {detail}" if detail else "")
            )
        return result.stdout or ""

    def execute(self, socket_path: str, command: str) -> Optional[MonitorResponse]:
        """Like ``send`` but returns a cleaned response, or None on transport failure."""
        try:
            raw = self.send(socket_path, command)
        except (SocketNotFoundError, CommandRelayError) as exc:
            log("WARN", f"Monitor command '{command}' failed: {exc}")
            return None
        response = MonitorResponse(command=command, text=clean_response(raw, command))
        if response.text:
            log("DEBUG", f"monitor {socket_path} -> {response.text}")
        return response

    def pause(self, socket_path: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, "stop")

    def resume(self, socket_path: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, "cont")

    def status(self, socket_path: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, "info status")

    def quit(self, socket_path: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, "quit")

    def savevm(self, socket_path: str, name: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, f"savevm {name}")

    def loadvm(self, socket_path: str, name: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, f"loadvm {name}")

    def delvm(self, socket_path: str, name: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, f"delvm {name}")

    def info_snapshots(self, socket_path: str) -> Optional[MonitorResponse]:
        return self.execute(socket_path, "info snapshots")
