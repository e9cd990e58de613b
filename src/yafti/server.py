from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

import click
import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.responses import PlainTextResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from yafti.catalog import DEFAULT_CATALOG_FILE_NAME, Action, ActionCatalog, Screen, load_catalog
from yafti.errors import ActionNotFoundError, ConfigurationError, SpawnError
from yafti.runner import DEFAULT_TERMINAL_COMMAND, ProcessRunner, bridge


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_HEARTBEAT_SECONDS = 30.0
HEARTBEAT_CHECK_INTERVAL_SECONDS = 5.0
EXEC_WRAPPER_ENV = "YAFTI_EXEC_WRAPPER"
EXEC_WRAPPER_URL_PLACEHOLDER = "%u"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
WS_CLOSE_ACTION_NOT_FOUND = 4404

SUPERVISOR_RUNNING = "running"
SUPERVISOR_STOPPED = "stopped"
SUPERVISOR_SHUTTING_DOWN = "shutting_down"
SUPERVISOR_TERMINATED = "terminated"

LOGGER = logging.getLogger("yafti")
LOGGER.addHandler(logging.NullHandler())


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _uvicorn_log_level(level: str) -> str:
    normalized = _normalize_log_level(level)
    if normalized == "debug":
        return "info"
    return normalized


class InhibitGate:
    """Counts in-flight executions; while non-zero, automatic shutdown is suppressed."""

    def __init__(self) -> None:
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def acquire(self) -> None:
        with self._lock:
            self._count += 1
            count = self._count
        LOGGER.debug("Inhibit acquired count=%d", count)

    def release(self) -> None:
        with self._lock:
            if self._count <= 0:
                raise RuntimeError("InhibitGate released more times than acquired.")
            self._count -= 1
            count = self._count
        LOGGER.debug("Inhibit released count=%d", count)

    def is_inhibited(self) -> bool:
        return self.count > 0

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()


class HeartbeatSupervisor:
    """Shuts the process down once clients stop sending heartbeats.

    ``check`` runs every ``interval_seconds`` on a background thread. When the last
    heartbeat is older than ``timeout_seconds`` and nothing holds the inhibit gate,
    ``shutdown`` is called exactly once and the loop ends. ``stop`` ends the loop
    without shutting anything down.
    """

    def __init__(
        self,
        inhibit: InhibitGate,
        shutdown: Callable[[], None],
        timeout_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        interval_seconds: float = HEARTBEAT_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inhibit = inhibit
        self.timeout_seconds = float(timeout_seconds)
        self.interval_seconds = float(interval_seconds)
        self._shutdown = shutdown
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._last_beat = clock()
        self._state = SUPERVISOR_RUNNING
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def last_beat(self) -> float:
        with self._lock:
            return self._last_beat

    def record_heartbeat(self) -> None:
        with self._lock:
            self._last_beat = self._clock()

    def check(self) -> bool:
        with self._lock:
            if self._state != SUPERVISOR_RUNNING:
                return False
            elapsed = self._clock() - self._last_beat
            if elapsed <= self.timeout_seconds or self.inhibit.is_inhibited():
                return False
            self._state = SUPERVISOR_SHUTTING_DOWN

        LOGGER.info("No heartbeat for %.0f seconds, shutting down server", elapsed)
        self._stop_event.set()
        try:
            self._shutdown()
        except Exception as exc:
            LOGGER.error("Shutdown error: %s", exc)
        with self._lock:
            self._state = SUPERVISOR_TERMINATED
        return True

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            if self.check():
                return
        with self._lock:
            if self._state == SUPERVISOR_RUNNING:
                self._state = SUPERVISOR_STOPPED

    def start(self) -> threading.Thread:
        if self._thread is None:
            self._thread = threading.Thread(target=self.run, name="yafti-heartbeat", daemon=True)
            self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class Session:
    def __init__(
        self,
        catalog: ActionCatalog,
        shutdown: Callable[[], None],
        runner: ProcessRunner | None = None,
        heartbeat_timeout_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        heartbeat_interval_seconds: float = HEARTBEAT_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.catalog = catalog
        self.runner = runner or ProcessRunner()
        self.inhibit = InhibitGate()
        self.supervisor = HeartbeatSupervisor(
            self.inhibit,
            shutdown,
            timeout_seconds=heartbeat_timeout_seconds,
            interval_seconds=heartbeat_interval_seconds,
            clock=clock,
        )

    def start(self) -> None:
        self.supervisor.start()

    def stop(self) -> None:
        self.supervisor.stop()

    def record_heartbeat(self) -> None:
        self.supervisor.record_heartbeat()

    def resolve_action(self, action_id: str) -> Action:
        action = self.catalog.lookup_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    def run_detached_action(self, action: Action) -> None:
        with self.inhibit.hold():
            try:
                self.runner.run_detached(action.script)
            except SpawnError as exc:
                LOGGER.warning("Detached action %s failed: %s", action.id, exc)
                return
        LOGGER.info("Detached action %s finished.", action.id)

    def trigger_detached(self, action_id: str) -> threading.Thread:
        action = self.resolve_action(action_id)
        LOGGER.info("Triggering detached action %s.", action.id)
        worker = threading.Thread(
            target=self.run_detached_action,
            args=(action,),
            name=f"yafti-detached-{action.id}",
            daemon=True,
        )
        worker.start()
        return worker

    async def open_attached_stream(self, action_id: str, websocket: WebSocket) -> None:
        action = self.resolve_action(action_id)
        with self.inhibit.hold():
            try:
                process = self.runner.run_attached(action.script)
            except SpawnError as exc:
                LOGGER.warning("Attached action %s failed to start: %s", action.id, exc)
                await websocket.send_text(f"Error starting command: {exc}")
                await websocket.close()
                return
            LOGGER.info("Attached action %s started pid=%s.", action.id, process.pid)
            await bridge(process, websocket)
        LOGGER.info("Attached action %s session ended.", action.id)


def _screen_payload(index: int, screen: Screen) -> dict[str, Any]:
    return {
        "index": index,
        "title": screen.title,
        "actions": [
            {
                "id": action.id,
                "title": action.title,
                "description": action.description,
                "default": action.default,
            }
            for action in screen.actions
        ],
    }


def _exec_wrapper_command(template: str, port: int) -> str:
    return template.replace(EXEC_WRAPPER_URL_PLACEHOLDER, f"http://localhost:{port}")


def _launch_exec_wrapper(template: str, port: int) -> subprocess.Popen | None:
    cmd = _exec_wrapper_command(template, port)
    LOGGER.info("Launching exec wrapper: %s", cmd)
    try:
        return subprocess.Popen(["sh", "-c", cmd])
    except OSError as exc:
        LOGGER.error("Unable to launch exec wrapper: %s", exc)
        return None


def create_app(session: Session, static_dir: Path | None = None) -> FastAPI:
    app = FastAPI()
    catalog = session.catalog

    @app.get("/_/heartbeat", response_class=PlainTextResponse)
    def heartbeat() -> str:
        session.record_heartbeat()
        return "Heartbeat received"

    @app.get("/api/screens")
    def api_screens() -> dict[str, Any]:
        return {
            "title": catalog.title,
            "screens": [_screen_payload(index, screen) for index, screen in enumerate(catalog.screens)],
        }

    @app.get("/api/screens/{idx}")
    def api_screen(idx: str) -> dict[str, Any]:
        try:
            index = int(idx)
            screen = catalog.screen(index)
        except (ValueError, IndexError):
            raise HTTPException(status_code=400, detail="Invalid screen index")
        return _screen_payload(index, screen)

    @app.post("/_/execute/{action_id}")
    def execute(action_id: str) -> RedirectResponse:
        try:
            action = session.resolve_action(action_id)
        except ActionNotFoundError:
            raise HTTPException(status_code=404, detail="Action not found")
        if not action.script.strip():
            raise HTTPException(status_code=400, detail="Action has no script to execute")
        session.trigger_detached(action.id)
        return RedirectResponse("/", status_code=303)

    @app.websocket("/_/ws/exec/{action_id}")
    async def ws_exec(action_id: str, websocket: WebSocket) -> None:
        try:
            session.resolve_action(action_id)
        except ActionNotFoundError:
            await websocket.close(code=WS_CLOSE_ACTION_NOT_FOUND)
            return
        await websocket.accept()
        await session.open_attached_stream(action_id, websocket)

    if static_dir is not None:
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    return app


@click.command()
@click.option(
    "--catalog",
    "catalog_file",
    default=DEFAULT_CATALOG_FILE_NAME,
    envvar="YAFTI_CATALOG",
    show_default=True,
    show_envvar=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="TOML file describing the screens and actions.",
)
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, envvar="YAFTI_PORT", show_default=True, show_envvar=True, type=int)
@click.option(
    "--heartbeat-timeout",
    default=DEFAULT_HEARTBEAT_SECONDS,
    envvar="YAFTI_HEARTBEAT_SECONDS",
    show_default=True,
    show_envvar=True,
    type=float,
    help="Seconds without a client heartbeat before the server exits.",
)
@click.option(
    "--terminal",
    default=DEFAULT_TERMINAL_COMMAND,
    envvar="YAFTI_TERMINAL",
    show_default=True,
    show_envvar=True,
    help="Terminal emulator command used for detached actions; the script path is appended.",
)
@click.option(
    "--static-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory served under /static.",
)
@click.option(
    "--log-level",
    default="info",
    envvar="YAFTI_LOG_LEVEL",
    show_default=True,
    show_envvar=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
)
def main(
    catalog_file: Path,
    host: str,
    port: int,
    heartbeat_timeout: float,
    terminal: str,
    static_dir: Path | None,
    log_level: str,
) -> None:
    normalized_log_level = _normalize_log_level(log_level)
    _configure_logging(normalized_log_level)
    try:
        catalog = load_catalog(catalog_file)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    LOGGER.info("Loaded %d actions from %s", len(catalog), catalog_file)

    server: uvicorn.Server | None = None

    def shutdown() -> None:
        if server is None:
            raise RuntimeError("Server is not running.")
        server.should_exit = True

    session = Session(
        catalog,
        shutdown,
        runner=ProcessRunner(terminal_command=terminal),
        heartbeat_timeout_seconds=heartbeat_timeout,
    )
    app = create_app(session, static_dir=static_dir)
    exec_wrapper = os.environ.get(EXEC_WRAPPER_ENV, "").strip()

    @app.on_event("startup")
    async def app_startup() -> None:
        session.start()
        if exec_wrapper:
            _launch_exec_wrapper(exec_wrapper, port)

    @app.on_event("shutdown")
    async def app_shutdown() -> None:
        session.stop()

    config = uvicorn.Config(app, host=host, port=port, log_level=_uvicorn_log_level(normalized_log_level))
    server = uvicorn.Server(config)
    LOGGER.info("Server started at http://localhost:%s", port)
    server.run()


if __name__ == "__main__":
    main()
