from __future__ import annotations

import asyncio
import os
import shlex
import shutil
import stat
import subprocess
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import yafti.runner as runner
from yafti.errors import SpawnError


BASH_AVAILABLE = shutil.which("bash") is not None


class FakeWebSocket:
    """Collects frames the bridge sends and replays queued client messages."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue[dict[str, object]] = asyncio.Queue()
        self.sent: list[bytes] = []
        self.closed = False

    def push_bytes(self, data: bytes) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def push_text(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1001})

    async def receive(self) -> dict[str, object]:
        return await self.incoming.get()

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise RuntimeError("send after close")
        self.sent.append(bytes(data))

    async def close(self, code: int = 1000) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, chunks: list[bytes], eof_delay: float = 0.05):
        self.chunks = list(chunks)
        self.eof_delay = eof_delay
        self.written: list[bytes] = []
        self.closed = False
        self.pid = 4242
        self.master_fd = -1

    def read(self, size: int = runner.READ_CHUNK_SIZE) -> bytes:
        if not self.chunks:
            time.sleep(self.eof_delay)
            return b""
        return self.chunks.pop(0)[:size]

    def try_write(self, data: bytes | memoryview) -> int:
        self.written.append(bytes(data))
        return len(data)

    def resize(self, cols: int, rows: int) -> None:
        self.written.append(f"resize:{cols}x{rows}".encode())

    def close(self) -> None:
        self.closed = True


class NormalizeScriptTests(unittest.TestCase):
    def test_adds_default_shebang(self) -> None:
        self.assertEqual(runner.normalize_script("echo hi"), "#!/bin/bash\necho hi")

    def test_preserves_existing_shebang(self) -> None:
        script = "#!/usr/bin/env python3\nprint('hi')"
        self.assertEqual(runner.normalize_script(script), script)

    def test_trims_surrounding_whitespace_before_checking_shebang(self) -> None:
        self.assertEqual(runner.normalize_script("\n\t#!/bin/sh\necho hi\n\r\n"), "#!/bin/sh\necho hi")

    def test_empty_script_gets_only_shebang(self) -> None:
        self.assertEqual(runner.normalize_script(""), "#!/bin/bash\n")


class DetachedRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.scratch = self.tmp_path / "scratch"
        self.scratch.mkdir()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_run_detached_executes_script_file_in_terminal_and_removes_it(self) -> None:
        copied = self.tmp_path / "copied.sh"
        terminal = ["sh", "-c", f'test -x "$0" && cp "$0" {shlex.quote(str(copied))}']
        detached = runner.ProcessRunner(terminal_command=terminal, scratch_dir=self.scratch)

        detached.run_detached("\necho hello\n")

        self.assertEqual(copied.read_text(encoding="utf-8"), "#!/bin/bash\necho hello")
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_run_detached_parses_terminal_command_string(self) -> None:
        detached = runner.ProcessRunner(terminal_command="ptyxis -s --", scratch_dir=self.scratch)
        seen: dict[str, object] = {}

        def fake_run(cmd: list[str], check: bool = False) -> subprocess.CompletedProcess:
            script_path = Path(cmd[-1])
            seen["cmd"] = cmd
            seen["body"] = script_path.read_text(encoding="utf-8")
            seen["mode"] = stat.S_IMODE(script_path.stat().st_mode)
            return subprocess.CompletedProcess(cmd, 0)

        with patch("yafti.runner.subprocess.run", side_effect=fake_run):
            detached.run_detached("#!/bin/sh\nls")

        self.assertEqual(seen["cmd"][:3], ["ptyxis", "-s", "--"])
        self.assertTrue(str(seen["cmd"][3]).startswith(str(self.scratch)))
        self.assertTrue(str(seen["cmd"][3]).endswith(".sh"))
        self.assertEqual(seen["body"], "#!/bin/sh\nls")
        self.assertEqual(seen["mode"], 0o755)
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_run_detached_removes_file_when_terminal_is_missing(self) -> None:
        detached = runner.ProcessRunner(
            terminal_command=[str(self.tmp_path / "no-such-terminal")],
            scratch_dir=self.scratch,
        )

        with self.assertRaisesRegex(SpawnError, "Unable to launch terminal"):
            detached.run_detached("echo hi")

        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_run_detached_removes_file_when_terminal_exits_non_zero(self) -> None:
        detached = runner.ProcessRunner(terminal_command=["sh", "-c", "exit 3"], scratch_dir=self.scratch)

        with self.assertRaisesRegex(SpawnError, "status 3"):
            detached.run_detached("echo hi")

        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_run_detached_removes_file_when_chmod_fails(self) -> None:
        detached = runner.ProcessRunner(terminal_command=["true"], scratch_dir=self.scratch)

        with patch("yafti.runner.os.chmod", side_effect=PermissionError("denied")), patch(
            "yafti.runner.subprocess.run"
        ) as run:
            with self.assertRaisesRegex(SpawnError, "executable"):
                detached.run_detached("echo hi")

        run.assert_not_called()
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_run_detached_removes_file_when_body_write_fails(self) -> None:
        detached = runner.ProcessRunner(terminal_command=["true"], scratch_dir=self.scratch)

        class FailingHandle:
            def __init__(self, fd: int) -> None:
                self.fd = fd
                self.closed = False

            def write(self, text: str) -> int:
                raise OSError(28, "No space left on device")

            def close(self) -> None:
                if not self.closed:
                    self.closed = True
                    os.close(self.fd)

        with patch("yafti.runner.os.fdopen", side_effect=lambda fd, *args, **kwargs: FailingHandle(fd)), patch(
            "yafti.runner.subprocess.run"
        ) as run:
            with self.assertRaisesRegex(SpawnError, "Unable to write temporary script"):
                detached.run_detached("echo hi")

        run.assert_not_called()
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_run_detached_fails_before_execution_when_scratch_dir_is_missing(self) -> None:
        detached = runner.ProcessRunner(terminal_command=["true"], scratch_dir=self.tmp_path / "missing")

        with patch("yafti.runner.subprocess.run") as run:
            with self.assertRaisesRegex(SpawnError, "temporary file"):
                detached.run_detached("echo hi")

        run.assert_not_called()

    def test_each_run_uses_a_fresh_file(self) -> None:
        detached = runner.ProcessRunner(terminal_command=["true"], scratch_dir=self.scratch)
        paths: list[str] = []

        def fake_run(cmd: list[str], check: bool = False) -> subprocess.CompletedProcess:
            paths.append(cmd[-1])
            return subprocess.CompletedProcess(cmd, 0)

        with patch("yafti.runner.subprocess.run", side_effect=fake_run):
            detached.run_detached("echo one")
            detached.run_detached("echo two")

        self.assertEqual(len(set(paths)), 2)


@unittest.skipUnless(BASH_AVAILABLE, "bash is required for PTY tests")
class AttachedRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = runner.ProcessRunner()
        self.processes: list[runner.AttachedProcess] = []

    def tearDown(self) -> None:
        for process in self.processes:
            process.close()

    def _start(self, script: str) -> runner.AttachedProcess:
        process = self.runner.run_attached(script)
        self.processes.append(process)
        return process

    def _read_all(self, process: runner.AttachedProcess) -> bytes:
        output = b""
        while True:
            chunk = process.read()
            if not chunk:
                return output
            output += chunk

    def test_run_attached_gives_script_a_terminal(self) -> None:
        process = self._start('test -t 1 && echo "tty:$TERM"')

        output = self._read_all(process)

        self.assertIn(b"tty:xterm-256color", output)

    def test_run_attached_pty_is_controlling_terminal(self) -> None:
        process = self._start("echo ctty-ok > /dev/tty")

        output = self._read_all(process)

        self.assertIn(b"ctty-ok", output)

    def test_run_attached_default_window_size(self) -> None:
        process = self._start("stty size")

        output = self._read_all(process)

        self.assertIn(b"48 160", output)

    def test_run_attached_reports_spawn_failure(self) -> None:
        broken = runner.ProcessRunner(shell="/nonexistent/shell")

        with self.assertRaisesRegex(SpawnError, "Unable to start"):
            broken.run_attached("echo hi")

    def test_close_kills_running_process_and_closes_pty(self) -> None:
        process = self._start("sleep 30")
        self.assertTrue(process.is_running())

        started = time.monotonic()
        process.close()

        self.assertLess(time.monotonic() - started, runner.PROCESS_REAP_TIMEOUT_SECONDS)
        self.assertFalse(process.is_running())
        self.assertTrue(process.closed)
        self.assertEqual(process.read(), b"")
        with self.assertRaises(OSError):
            os.fstat(process.master_fd)

    def test_close_is_idempotent(self) -> None:
        process = self._start("true")
        process.close()
        process.close()
        self.assertTrue(process.closed)

    def test_write_reaches_process_input(self) -> None:
        process = self._start("read line; echo got-$line")

        process.write(b"abc\n")
        output = self._read_all(process)

        self.assertIn(b"got-abc", output)


class BridgeTests(unittest.TestCase):
    def test_output_frames_preserve_bytes_and_close_remote(self) -> None:
        payload = bytes(range(256))
        process = FakeProcess([payload[:100], payload[100:]])
        websocket = FakeWebSocket()

        asyncio.run(runner.bridge(process, websocket))

        self.assertEqual(b"".join(websocket.sent), payload)
        self.assertEqual(websocket.sent, [payload[:100], payload[100:]])
        self.assertTrue(websocket.closed)
        self.assertTrue(process.closed)

    def test_input_frames_are_written_verbatim(self) -> None:
        process = FakeProcess([], eof_delay=1.0)

        async def scenario() -> FakeWebSocket:
            websocket = FakeWebSocket()
            websocket.push_bytes(b"\x1b[A\x00\xff")
            websocket.push_text("ls\r")
            websocket.push_text('{"type": "resize", "cols": 100, "rows": 30}')
            session = asyncio.create_task(runner.bridge(process, websocket))
            while len(process.written) < 3:
                await asyncio.sleep(0.01)
            websocket.disconnect()
            await asyncio.wait_for(session, timeout=5)
            return websocket

        websocket = asyncio.run(scenario())

        self.assertEqual(process.written, [b"\x1b[A\x00\xff", b"ls\r", b"resize:100x30"])
        self.assertTrue(process.closed)
        self.assertFalse(websocket.closed)

    @unittest.skipUnless(BASH_AVAILABLE, "bash is required for PTY tests")
    def test_real_pty_output_is_byte_exact(self) -> None:
        payload = bytes(range(256))
        emitter = f"{shlex.quote(sys.executable)} -c 'import sys; sys.stdout.buffer.write(bytes(range(256)))'"
        process = runner.ProcessRunner().run_attached(f"stty raw -echo; {emitter}")
        websocket = FakeWebSocket()

        async def scenario() -> None:
            await asyncio.wait_for(runner.bridge(process, websocket), timeout=10)

        asyncio.run(scenario())

        self.assertEqual(b"".join(websocket.sent), payload)
        self.assertTrue(websocket.closed)
        self.assertTrue(process.closed)

    @unittest.skipUnless(BASH_AVAILABLE, "bash is required for PTY tests")
    def test_remote_disconnect_kills_running_process(self) -> None:
        process = runner.ProcessRunner().run_attached("sleep 30")
        websocket = FakeWebSocket()

        async def scenario() -> None:
            websocket.disconnect()
            await asyncio.wait_for(runner.bridge(process, websocket), timeout=10)

        started = time.monotonic()
        asyncio.run(scenario())

        self.assertLess(time.monotonic() - started, 10)
        self.assertFalse(process.is_running())
        self.assertTrue(process.closed)
        self.assertFalse(websocket.closed)

    @unittest.skipUnless(BASH_AVAILABLE, "bash is required for PTY tests")
    def test_disconnect_after_large_paste_to_non_reading_script(self) -> None:
        process = runner.ProcessRunner().run_attached("stty -echo; sleep 30")
        websocket = FakeWebSocket()

        async def scenario() -> None:
            websocket.push_bytes(b"a\n" * 16384)
            websocket.disconnect()
            await asyncio.wait_for(runner.bridge(process, websocket), timeout=10)

        started = time.monotonic()
        asyncio.run(scenario())

        self.assertLess(time.monotonic() - started, 10)
        self.assertFalse(process.is_running())
        self.assertTrue(process.closed)
        self.assertFalse(websocket.closed)

    @unittest.skipUnless(BASH_AVAILABLE, "bash is required for PTY tests")
    def test_process_exit_closes_remote_and_stops_frames(self) -> None:
        process = runner.ProcessRunner().run_attached("echo done")
        websocket = FakeWebSocket()

        async def scenario() -> None:
            await asyncio.wait_for(runner.bridge(process, websocket), timeout=10)

        asyncio.run(scenario())

        self.assertIn(b"done", b"".join(websocket.sent))
        self.assertTrue(websocket.closed)
        self.assertTrue(process.closed)


if __name__ == "__main__":
    unittest.main()
