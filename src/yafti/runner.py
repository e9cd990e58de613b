from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import select
import shlex
import signal
import struct
import subprocess
import termios
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from yafti.errors import SpawnError


DEFAULT_SHEBANG = "#!/bin/bash"
DEFAULT_SCRATCH_DIR = Path("/tmp")
DEFAULT_TERMINAL_COMMAND = "ptyxis -s --"
DEFAULT_SHELL = "bash"
DEFAULT_PTY_COLS = 160
DEFAULT_PTY_ROWS = 48
DEFAULT_RUNTIME_TERM = "xterm-256color"
READ_CHUNK_SIZE = 1024
IO_POLL_SECONDS = 0.2
PROCESS_REAP_TIMEOUT_SECONDS = 4.0
CONTROL_MESSAGE_RESIZE = "resize"

LOGGER = logging.getLogger("yafti.runner")
LOGGER.addHandler(logging.NullHandler())


def normalize_script(script: str) -> str:
    body = str(script or "").strip("\n\r\t")
    if not body.startswith("#!"):
        body = f"{DEFAULT_SHEBANG}\n{body}"
    return body


def _set_terminal_size(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


def _signal_process_group(pid: int, signum: int) -> None:
    try:
        pgid = os.getpgid(pid)
    except OSError:
        pgid = 0

    if pgid:
        try:
            os.killpg(pgid, signum)
            return
        except OSError:
            pass

    try:
        os.kill(pid, signum)
    except OSError:
        pass


def _acquire_controlling_terminal() -> None:
    # Runs in the forked child after setsid(); stdin is already the PTY slave.
    # The parent is threaded, so nothing but this one ioctl may run between fork and exec.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


@dataclass
class AttachedProcess:
    """A shell running on the slave side of a PTY, reachable through ``master_fd``."""

    process: subprocess.Popen
    master_fd: int
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return int(self.process.pid)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_running(self) -> bool:
        return self.process.poll() is None

    def read(self, size: int = READ_CHUNK_SIZE) -> bytes:
        # EIO from the master side means the slave is gone; treat it as EOF.
        while not self._closed:
            try:
                return os.read(self.master_fd, size)
            except BlockingIOError:
                try:
                    select.select([self.master_fd], [], [], IO_POLL_SECONDS)
                except (OSError, ValueError):
                    return b""
            except OSError:
                return b""
        return b""

    def try_write(self, data: bytes | memoryview) -> int:
        """Write what the PTY accepts right now; 0 when its input buffer is full."""
        try:
            return os.write(self.master_fd, data)
        except BlockingIOError:
            return 0

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view and not self._closed:
            written = self.try_write(view)
            if not written:
                select.select([], [self.master_fd], [], IO_POLL_SECONDS)
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        _set_terminal_size(self.master_fd, cols, rows)
        _signal_process_group(self.pid, signal.SIGWINCH)

    def terminate(self) -> None:
        if self.is_running():
            _signal_process_group(self.pid, signal.SIGKILL)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.terminate()
        try:
            self.process.wait(timeout=PROCESS_REAP_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Attached process pid=%s did not exit after SIGKILL.", self.pid)
        _close_fd(self.master_fd)
        LOGGER.debug("Attached process pid=%s closed exit_code=%s", self.pid, self.process.returncode)


class ProcessRunner:
    def __init__(
        self,
        terminal_command: str | list[str] = DEFAULT_TERMINAL_COMMAND,
        scratch_dir: Path = DEFAULT_SCRATCH_DIR,
        shell: str = DEFAULT_SHELL,
    ):
        if isinstance(terminal_command, str):
            terminal_command = shlex.split(terminal_command)
        self.terminal_command = list(terminal_command)
        self.scratch_dir = Path(scratch_dir)
        self.shell = shell

    def run_detached(self, script: str) -> None:
        """Run ``script`` inside an external terminal window and block until it closes.

        The script is written to a fresh executable file in ``scratch_dir``. The file
        is removed on every exit path, including failures to write or launch.
        """
        body = normalize_script(script)
        try:
            fd, raw_path = tempfile.mkstemp(suffix=".sh", dir=str(self.scratch_dir))
        except OSError as exc:
            LOGGER.error("Unable to create temporary file for script: %s", exc)
            raise SpawnError(f"Unable to create temporary file for script: {exc}") from exc

        script_path = Path(raw_path)
        handle = None
        try:
            handle = os.fdopen(fd, "w", encoding="utf-8")
            handle.write(body)
            handle.close()
            LOGGER.debug("Temporary script created: %s", script_path)

            try:
                os.chmod(script_path, 0o755)
            except OSError as exc:
                raise SpawnError(f"Unable to make temporary script executable: {exc}") from exc

            cmd = [*self.terminal_command, str(script_path)]
            LOGGER.info("Executing temporary script %s via %s", script_path, self.terminal_command[0])
            try:
                result = subprocess.run(cmd, check=False)
            except OSError as exc:
                raise SpawnError(f"Unable to launch terminal '{self.terminal_command[0]}': {exc}") from exc
            if result.returncode != 0:
                raise SpawnError(f"Terminal exited with status {result.returncode}.")
        except SpawnError as exc:
            LOGGER.error("Detached run failed: %s", exc)
            raise
        except OSError as exc:
            LOGGER.error("Unable to write temporary script %s: %s", script_path, exc)
            raise SpawnError(f"Unable to write temporary script: {exc}") from exc
        finally:
            if handle is None:
                _close_fd(fd)
            elif not handle.closed:
                handle.close()
            script_path.unlink(missing_ok=True)
            LOGGER.debug("Temporary script removed: %s", script_path)

    def run_attached(self, script: str) -> AttachedProcess:
        try:
            master_fd, slave_fd = os.openpty()
        except OSError as exc:
            raise SpawnError(f"Unable to allocate a pseudo-terminal: {exc}") from exc

        env = dict(os.environ)
        env["TERM"] = DEFAULT_RUNTIME_TERM
        try:
            _set_terminal_size(slave_fd, DEFAULT_PTY_COLS, DEFAULT_PTY_ROWS)
            proc = subprocess.Popen(
                [self.shell, "-c", script],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                close_fds=True,
                start_new_session=True,
                preexec_fn=_acquire_controlling_terminal,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            _close_fd(master_fd)
            _close_fd(slave_fd)
            raise SpawnError(f"Unable to start '{self.shell}': {exc}") from exc

        _close_fd(slave_fd)
        os.set_blocking(master_fd, False)
        LOGGER.debug("Attached process started pid=%s", proc.pid)
        return AttachedProcess(process=proc, master_fd=master_fd)


def _control_message(text: str) -> dict[str, Any] | None:
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(payload, dict) and str(payload.get("type") or "") == CONTROL_MESSAGE_RESIZE:
        return payload
    return None


async def _wait_writable(fd: int) -> None:
    loop = asyncio.get_running_loop()
    ready = loop.create_future()
    loop.add_writer(fd, lambda: ready.done() or ready.set_result(None))
    try:
        await ready
    finally:
        loop.remove_writer(fd)


async def _write_to_pty(process: AttachedProcess, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = process.try_write(view)
        view = view[written:]
        if view:
            await _wait_writable(process.master_fd)


async def bridge(process: AttachedProcess, websocket: WebSocket, chunk_size: int = READ_CHUNK_SIZE) -> None:
    """Pump bytes between ``process`` and an accepted websocket until either side ends.

    Output is forwarded as binary frames exactly as read from the PTY. Input frames
    are written verbatim; text frames are UTF-8 encoded first. Input is queued to a
    separate writer so that a script that never reads its input cannot stop the
    bridge from seeing the remote disconnect. Whichever side ends first tears down
    the other: the process is killed and the PTY closed in every case, and the
    websocket is closed unless the remote side was the one to leave.
    """
    pending_input: asyncio.Queue[bytes | tuple[int, int]] = asyncio.Queue()

    async def stream_output() -> None:
        while True:
            chunk = await asyncio.to_thread(process.read, chunk_size)
            if not chunk:
                break
            await websocket.send_bytes(chunk)

    async def stream_input() -> None:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data is None:
                text = message.get("text") or ""
                control = _control_message(text)
                if control is not None:
                    try:
                        size = (int(control.get("cols") or 0), int(control.get("rows") or 0))
                    except (TypeError, ValueError) as exc:
                        LOGGER.debug("Ignoring invalid resize request: %s", exc)
                        continue
                    pending_input.put_nowait(size)
                    continue
                data = text.encode("utf-8")
            if data:
                pending_input.put_nowait(data)

    async def feed_process() -> None:
        while True:
            item = await pending_input.get()
            if isinstance(item, tuple):
                try:
                    process.resize(*item)
                except OSError as exc:
                    LOGGER.debug("Ignoring invalid resize request: %s", exc)
                continue
            await _write_to_pty(process, item)

    sender = asyncio.create_task(stream_output())
    receiver = asyncio.create_task(stream_input())
    writer = asyncio.create_task(feed_process())
    tasks = {sender, receiver, writer}
    close_remote = False
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        close_remote = receiver not in done
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                LOGGER.debug("Attached stream pid=%s ended with error: %r", process.pid, exc)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.to_thread(process.close)
        if close_remote:
            try:
                await websocket.close()
            except (RuntimeError, WebSocketDisconnect):
                # Remote side already gone.
                pass
        LOGGER.debug("Attached stream pid=%s finished close_remote=%s", process.pid, close_remote)
