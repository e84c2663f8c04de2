"""
Front-end client for the Control Channel.

Talks HTTP over the service's Unix socket. When nothing is listening, the
state directory still answers basic status questions (``offline_status``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from autosort.exceptions import ChannelProtocolError, DaemonNotRunning, RemoteError
from autosort.models.schemas import ControlResponse, DaemonState, DaemonStatus, ExecutionOutcome, Rule
from autosort.utils.helpers import process_is_running

# Host is ignored on a Unix socket but required in the URL
BASE_URL = "http://autosort"


class ControlClient:
    """
    Client for a running autosort service.

    Usage:
        async with ControlClient(socket_path) as client:
            status = await client.get_status()
            async for status in client.subscribe():
                ...
    """

    def __init__(self, socket_path: Path, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize client.

        Args:
            socket_path: Control socket of the service
            timeout: Per-request timeout, seconds
            transport: Transport override (in-process testing)
        """
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ControlClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._client is not None:
            return
        transport = self._transport
        if transport is None:
            if not self.socket_path.exists():
                raise DaemonNotRunning(f"No control socket at {self.socket_path}")
            transport = httpx.AsyncHTTPTransport(uds=str(self.socket_path))
        self._client = httpx.AsyncClient(transport=transport, base_url=BASE_URL, timeout=self.timeout)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # Operations ---------------------------------------------------------------------

    async def call(self, op: str, **params: Any) -> Any:
        """
        Send one request envelope and return its ``ok`` payload.

        Raises:
            DaemonNotRunning: If the socket refuses the connection
            RemoteError: If the service answered with a structured error
        """
        await self.connect()
        try:
            response = await self._client.post("/rpc", json={"op": op, "params": params})
        except (httpx.ConnectError, FileNotFoundError, ConnectionRefusedError) as e:
            raise DaemonNotRunning(f"Cannot reach autosort at {self.socket_path}: {e}") from e

        try:
            envelope = ControlResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ChannelProtocolError(f"Unreadable response ({response.status_code})") from e

        if envelope.error is not None:
            raise RemoteError(envelope.error.kind, envelope.error.message)
        return envelope.ok

    async def get_status(self) -> DaemonStatus:
        return DaemonStatus.model_validate(await self.call("get_status"))

    async def list_rules(self) -> List[Rule]:
        return [Rule.model_validate(r) for r in await self.call("list_rules")]

    async def add_rule(self, rule: Dict[str, Any]) -> Rule:
        return Rule.model_validate(await self.call("add_rule", rule=rule))

    async def edit_rule(self, rule_id: str, changes: Dict[str, Any]) -> Rule:
        return Rule.model_validate(await self.call("edit_rule", id=rule_id, changes=changes))

    async def delete_rule(self, rule_id: str) -> None:
        await self.call("delete_rule", id=rule_id)

    async def toggle_rule(self, rule_id: str, enabled: Optional[bool] = None) -> Rule:
        params: Dict[str, Any] = {"id": rule_id}
        if enabled is not None:
            params["enabled"] = enabled
        return Rule.model_validate(await self.call("toggle_rule", **params))

    async def reload(self) -> Dict[str, Any]:
        return await self.call("reload")

    async def stop(self) -> None:
        await self.call("stop")

    async def tail_log(self, n: int = 20) -> List[ExecutionOutcome]:
        return [ExecutionOutcome.model_validate(o) for o in await self.call("tail_log", n=n)]

    async def health(self) -> Dict[str, Any]:
        await self.connect()
        try:
            response = await self._client.get("/health")
        except httpx.ConnectError as e:
            raise DaemonNotRunning(f"Cannot reach autosort at {self.socket_path}: {e}") from e
        return response.json()

    async def subscribe(self) -> AsyncIterator[DaemonStatus]:
        """Yield the current status, then every change until the service stops."""
        await self.connect()
        try:
            async with self._client.stream("GET", "/subscribe", timeout=None) as response:
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    yield DaemonStatus.model_validate(json.loads(line))
        except httpx.ConnectError as e:
            raise DaemonNotRunning(f"Cannot reach autosort at {self.socket_path}: {e}") from e
        except httpx.RemoteProtocolError:
            logger.debug("Status stream closed by the service")


def offline_status(state_dir: Path, recent: int = 20) -> DaemonStatus:
    """
    Status as seen from the state directory when the service does not answer.

    A pid file whose process no longer exists is reported as a crash.
    """
    from domains.daemon.state import StateDirectory

    state = StateDirectory(state_dir)
    pid = state.read_pid()
    last = state.read_status()
    recent_outcomes = state.read_tail(recent)

    if pid is not None and process_is_running(pid):
        return DaemonStatus(
            running=True,
            state=last.state if last else DaemonState.RUNNING,
            pid=pid,
            started_at=last.started_at if last else None,
            watched_paths=last.watched_paths if last else 0,
            rule_count=last.rule_count if last else 0,
            recent_outcomes=recent_outcomes,
            last_error="Control Channel not reachable",
        )

    crashed = pid is not None or (last is not None and last.state is DaemonState.CRASHED)
    return DaemonStatus(
        running=False,
        state=DaemonState.CRASHED if crashed else DaemonState.STOPPED,
        recent_outcomes=recent_outcomes,
        last_error=last.last_error if last else None,
    )
