"""
Background service.

Owns one Watcher -> Debouncer -> Rule Engine pipeline plus the Control
Channel server, and drives the lifecycle state machine:

    Stopped -> Starting -> Running <-> Reloading
    Running -> Stopping -> Stopped
    any -> Crashed (unrecoverable failure)

The observer thread hands raw events to the event loop through
``call_soon_threadsafe``; everything after that runs as asyncio tasks.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Set

import uvicorn
from loguru import logger

from autosort import __version__
from autosort.exceptions import (
    AutosortError,
    ConfigInvalid,
    ControlBindFailed,
    ServiceStateError,
)
from autosort.models.schemas import DaemonState, DaemonStatus, ExecutionOutcome
from autosort.utils.config import ConfigLoader, Settings, file_config_loader, get_settings
from autosort.utils.helpers import utcnow
from domains.daemon.state import StateDirectory
from domains.daemon.status import StatusBroadcaster
from domains.rules.actions import ActionExecutor
from domains.rules.engine import RuleEngine
from domains.watching.debouncer import Debouncer
from domains.watching.events import RawEvent, SettledEvent
from domains.watching.watcher import DirectoryWatcher

_ACTIVE = {DaemonState.STARTING, DaemonState.RUNNING, DaemonState.RELOADING, DaemonState.STOPPING}
_REFUSES_RULE_CHANGES = {DaemonState.RELOADING, DaemonState.STOPPING, DaemonState.CRASHED}


class ControlServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the service."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self):
        yield


class DaemonService:
    """One running instance of the organizer. No state is shared between instances."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        config_loader: Optional[ConfigLoader] = None,
        observer_factory=None,
    ):
        """
        Initialize service.

        Args:
            settings: Runtime settings (default: environment)
            config_loader: Returns the watch/rule configuration; re-invoked on reload
            observer_factory: watchdog observer class override
        """
        self.settings = settings or get_settings()
        self._config_loader = config_loader or file_config_loader(self.settings.get_config_file())
        self.state_dir = StateDirectory(self.settings.get_state_dir())
        self.socket_path: Path = self.settings.get_socket_path()

        self.broadcaster = StatusBroadcaster()
        self.executor = ActionExecutor(
            io_timeout=self.settings.action_timeout,
            command_timeout=self.settings.command_timeout,
            overwrite=self.settings.overwrite,
            output_limit=self.settings.output_capture_bytes,
            trash_dir=self.settings.get_trash_dir(),
        )
        self.engine = RuleEngine(
            executor=self.executor,
            log_size=self.settings.outcome_log_size,
            self_event_ttl=self.settings.self_event_ttl,
        )
        self.engine.add_outcome_listener(self._on_outcome)
        self.engine.add_change_listener(self._publish)

        watcher_kwargs = {"observer_factory": observer_factory} if observer_factory else {}
        self.watcher = DirectoryWatcher(self._emit_raw, **watcher_kwargs)
        self.debouncer: Optional[Debouncer] = None

        self._state = DaemonState.STOPPED
        self._started_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._raw_queue: Optional[asyncio.Queue] = None
        self._settled_queue: Optional[asyncio.Queue] = None
        self._pipeline: Set[asyncio.Task] = set()
        self._server: Optional[ControlServer] = None
        self._server_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None
        self._signals_installed = False
        self._background: Set[asyncio.Task] = set()
        self._transition = asyncio.Lock()
        self._finished = asyncio.Event()

    # Status -------------------------------------------------------------------------

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def get_status(self) -> DaemonStatus:
        """Current status snapshot."""
        running = self._state in _ACTIVE
        return DaemonStatus(
            running=running,
            state=self._state,
            pid=os.getpid() if running else None,
            started_at=self._started_at if running else None,
            watched_paths=len(self.watcher.watched_paths),
            rule_count=self.engine.rule_count,
            recent_outcomes=self.engine.tail(self.settings.status_recent_outcomes),
            last_error=self._last_error,
        )

    def check_rule_changes_allowed(self) -> None:
        """Raise ServiceStateError while reloading, stopping or crashed."""
        if self._state in _REFUSES_RULE_CHANGES:
            raise ServiceStateError(f"Rules cannot be changed while {self._state.value}")

    # Lifecycle ----------------------------------------------------------------------

    async def start(self, install_signals: bool = False) -> None:
        """
        Start every component and begin serving the Control Channel.

        Raises:
            AlreadyRunning: If another instance holds the state directory
            ConfigInvalid: If the initial configuration does not validate
            ControlBindFailed: If the control socket cannot be bound
        """
        async with self._transition:
            if self._state not in (DaemonState.STOPPED, DaemonState.CRASHED):
                raise ServiceStateError(f"Cannot start while {self._state.value}")

            self._finished.clear()
            self._last_error = None
            if self.broadcaster.closed:
                self.broadcaster = StatusBroadcaster()
            self._set_state(DaemonState.STARTING)
            logger.info(f"Starting autosort v{__version__}")

            try:
                await self._start_components(install_signals)
            except Exception as e:
                await self._teardown(drain=False)
                await self._crash(e)
                raise

            self._started_at = utcnow()
            self._set_state(DaemonState.RUNNING)
            logger.success(
                f"autosort running (pid {os.getpid()}, {self.engine.rule_count} rules, "
                f"{len(self.watcher.watched_paths)} watched paths)"
            )

    async def reload(self) -> Dict[str, Any]:
        """
        Re-read the configuration and apply it atomically.

        An invalid configuration is rejected wholesale and the previous rule
        set keeps running.

        Returns:
            Summary with the new rule count, watched path count and aborted passes
        """
        async with self._transition:
            if self._state is not DaemonState.RUNNING:
                raise ServiceStateError(f"Cannot reload while {self._state.value}")

            self._set_state(DaemonState.RELOADING)
            self.engine.pause()
            try:
                config = await asyncio.to_thread(self._config_loader)
            except ConfigInvalid as e:
                logger.error(f"Reload rejected, keeping previous rules: {e.message}")
                self._last_error = e.message
                self.engine.resume()
                self._set_state(DaemonState.RUNNING)
                raise

            aborted = await self.engine.drain(self.settings.drain_timeout)
            await self.engine.replace_rules(config.rules)
            failures = await asyncio.to_thread(self.watcher.reload, config.watches)
            self._last_error = _join_errors(failures)

            self.engine.resume()
            self._set_state(DaemonState.RUNNING)
            logger.success(f"Configuration reloaded ({self.engine.rule_count} rules)")
            return {
                "rule_count": self.engine.rule_count,
                "watched_paths": len(self.watcher.watched_paths),
                "aborted": aborted,
            }

    async def stop(self) -> None:
        """Drain in-flight work (bounded), stop every component, release the lock."""
        if self._state is DaemonState.STOPPING:
            await self._finished.wait()
            return

        async with self._transition:
            if self._state not in (DaemonState.RUNNING, DaemonState.STARTING):
                return

            self._set_state(DaemonState.STOPPING)
            logger.info("Stopping autosort...")
            self._close_listener()
            await self._teardown(drain=True)
            self._set_state(DaemonState.STOPPED)
            await self._release()
            logger.success("autosort stopped")

    def request_stop(self) -> asyncio.Task:
        """Schedule ``stop`` without waiting for it."""
        return self._spawn(self.stop(), name="stop")

    async def run_forever(self, install_signals: bool = True) -> int:
        """
        Start and block until stopped.

        Returns:
            Process exit code: 0 after a clean stop, 1 after a crash
        """
        await self.start(install_signals=install_signals)
        await self._finished.wait()
        return 0 if self._state is DaemonState.STOPPED else 1

    async def wait_stopped(self) -> DaemonState:
        await self._finished.wait()
        return self._state

    # Startup ------------------------------------------------------------------------

    async def _start_components(self, install_signals: bool) -> None:
        self._loop = asyncio.get_running_loop()
        self.state_dir.ensure()
        self.state_dir.acquire()

        config = await asyncio.to_thread(self._config_loader)
        await self.engine.replace_rules(config.rules)

        self._raw_queue = asyncio.Queue()
        self._settled_queue = asyncio.Queue()
        self.debouncer = Debouncer(
            self._settled_queue.put_nowait,
            quiet_window=self.settings.quiet_window,
            max_pending=self.settings.max_pending_paths,
        )
        self.engine.resume()
        self._start_pipeline_task(self.debouncer.run(self._raw_queue), "debouncer")
        self._start_pipeline_task(self.engine.run(self._settled_queue), "dispatcher")

        failures = await asyncio.to_thread(self.watcher.start, config.watches)
        self._last_error = _join_errors(failures)

        await self._start_control_server()

        if install_signals:
            self._install_signal_handlers()

    async def _start_control_server(self) -> None:
        from autosort.main import create_app

        self._socket = _bind_unix_socket(self.socket_path)
        config = uvicorn.Config(
            create_app(self),
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=max(1, int(self.settings.drain_timeout)),
        )
        self._server = ControlServer(config)
        self._server_task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]), name="control-server",
        )
        self._server_task.add_done_callback(self._on_server_done)

        while not self._server.started:
            if self._server_task.done():
                raise ControlBindFailed(f"Control Channel failed to start on {self.socket_path}")
            await asyncio.sleep(0.01)
        logger.success(f"Control Channel listening on {self.socket_path}")

    def _start_pipeline_task(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._pipeline.add(task)
        task.add_done_callback(self._on_pipeline_done)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGHUP, lambda: self._spawn(self._reload_from_signal(), "reload"))
            loop.add_signal_handler(signal.SIGTERM, self.request_stop)
            loop.add_signal_handler(signal.SIGINT, self.request_stop)
        except (NotImplementedError, RuntimeError, AttributeError) as e:
            logger.warning(f"Signal handlers unavailable: {e}")
            return
        self._signals_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed or self._loop is None:
            return
        for sig in (signal.SIGHUP, signal.SIGTERM, signal.SIGINT):
            self._loop.remove_signal_handler(sig)
        self._signals_installed = False

    async def _reload_from_signal(self) -> None:
        logger.info("SIGHUP received, reloading configuration")
        try:
            await self.reload()
        except AutosortError as e:
            logger.error(f"Reload failed: {e.message}")

    # Teardown -----------------------------------------------------------------------

    async def _teardown(self, drain: bool) -> None:
        self.engine.pause()

        aborted = await self.engine.drain(self.settings.drain_timeout if drain else 0)
        if aborted:
            logger.warning(f"{aborted} evaluation passes aborted during shutdown")

        if self.watcher.observer is not None:
            await asyncio.to_thread(self.watcher.stop)

        pipeline = list(self._pipeline)
        self._pipeline.clear()
        for task in pipeline:
            task.cancel()
        await asyncio.gather(*pipeline, return_exceptions=True)
        if self.debouncer is not None:
            self.debouncer.cancel()

        self._remove_signal_handlers()

    def _close_listener(self) -> None:
        """Refuse new Control Channel connections; requests already in flight complete."""
        if self._server is not None:
            for server in getattr(self._server, "servers", []):
                server.close()
        if self._socket is not None:
            self.socket_path.unlink(missing_ok=True)

    async def _shutdown_server(self) -> None:
        self.broadcaster.close()
        if self._server is not None and self._server_task is not None:
            self._server.should_exit = True
            await asyncio.gather(self._server_task, return_exceptions=True)
        self._server = None
        self._server_task = None

        if self._socket is not None:
            self._socket.close()
            self._socket = None
            self.socket_path.unlink(missing_ok=True)

    async def _release(self) -> None:
        await self._shutdown_server()
        self.state_dir.release()
        self._finished.set()

    async def _crash(self, exc: BaseException) -> None:
        message = exc.message if isinstance(exc, AutosortError) else f"{type(exc).__name__}: {exc}"
        logger.error(f"autosort crashed: {message}")
        self._last_error = message
        self._set_state(DaemonState.CRASHED)
        await self._release()

    def _on_pipeline_done(self, task: asyncio.Task) -> None:
        self._pipeline.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._state in _ACTIVE:
            logger.opt(exception=exc).error(f"Pipeline task {task.get_name()} failed")
            self._spawn(self._crash_running(exc), name="crash")

    def _on_server_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._state is not DaemonState.RUNNING:
            return
        exc = task.exception() or ControlBindFailed("Control Channel exited unexpectedly")
        self._spawn(self._crash_running(exc), name="crash")

    async def _crash_running(self, exc: BaseException) -> None:
        async with self._transition:
            if self._state not in _ACTIVE:
                return
            await self._teardown(drain=False)
            await self._crash(exc)

    # Pipeline hooks -----------------------------------------------------------------

    def _emit_raw(self, event: RawEvent) -> None:
        """Called from the observer thread."""
        loop, queue = self._loop, self._raw_queue
        if loop is None or queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, event)

    def _on_outcome(self, outcome: ExecutionOutcome) -> None:
        if self.state_dir.is_locked:
            try:
                self.state_dir.append_outcome(outcome)
            except OSError as e:
                logger.error(f"Failed to append to activity log: {e}")
        self._publish()

    def _set_state(self, state: DaemonState) -> None:
        if state is not self._state:
            logger.debug(f"Service state: {self._state.value} -> {state.value}")
        self._state = state
        self._publish()

    def _publish(self) -> None:
        status = self.get_status()
        if self.broadcaster.publish(status) and self.state_dir.is_locked:
            self.state_dir.write_status(status)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def settle(self, event: SettledEvent) -> None:
        """Inject a settled event, bypassing the watcher."""
        if self._settled_queue is None:
            raise ServiceStateError("Service is not running")
        self._settled_queue.put_nowait(event)


def _bind_unix_socket(path: Path) -> socket.socket:
    if sys.platform == "win32" or not hasattr(socket, "AF_UNIX"):
        raise ControlBindFailed("Unix domain sockets are not available on this platform")

    path.parent.mkdir(parents=True, exist_ok=True)
    # The state lock is held, so any existing socket file is stale
    path.unlink(missing_ok=True)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(str(path))
        os.chmod(path, 0o600)
    except OSError as e:
        sock.close()
        raise ControlBindFailed(f"Cannot bind control socket {path}: {e}") from e
    return sock


def _join_errors(errors) -> Optional[str]:
    messages = [e.message for e in errors]
    return "; ".join(messages) if messages else None
