import os

import httpx
import pytest

from autosort.exceptions import DaemonNotRunning, RemoteError
from autosort.main import create_app
from autosort.models.schemas import DaemonState, DaemonStatus, ExecutionOutcome, OutcomeStatus, TrashAction
from autosort.utils.control_client import ControlClient, offline_status
from domains.daemon.service import DaemonService
from domains.daemon.state import StateDirectory


@pytest.fixture
def service(settings):
    return DaemonService(settings, config_loader=lambda: None)


def client_for(service: DaemonService) -> ControlClient:
    return ControlClient(service.socket_path, transport=httpx.ASGITransport(app=create_app(service)))


@pytest.mark.asyncio
async def test_client_round_trip(service):
    async with client_for(service) as client:
        rule = await client.add_rule({
            "name": "Old screenshots",
            "condition": {"type": "name", "pattern": "Screenshot*"},
            "actions": [{"type": "trash"}],
        })
        assert rule.name == "Old screenshots"

        rules = await client.list_rules()
        assert [r.id for r in rules] == [rule.id]

        assert (await client.toggle_rule(rule.id)).enabled is False
        assert (await client.edit_rule(rule.id, {"enabled": True})).enabled is True

        status = await client.get_status()
        assert isinstance(status, DaemonStatus)
        assert status.rule_count == 1

        await client.delete_rule(rule.id)
        assert await client.tail_log(5) == []


@pytest.mark.asyncio
async def test_client_raises_remote_errors(service):
    async with client_for(service) as client:
        with pytest.raises(RemoteError) as excinfo:
            await client.delete_rule("missing")

    assert excinfo.value.kind == "NotFound"


@pytest.mark.asyncio
async def test_client_without_socket_reports_not_running(tmp_path):
    client = ControlClient(tmp_path / "control.sock")
    with pytest.raises(DaemonNotRunning):
        await client.get_status()


@pytest.mark.skipif(os.name != "posix", reason="Unix sockets")
@pytest.mark.asyncio
async def test_client_with_stale_socket_reports_not_running(tmp_path):
    import socket

    path = tmp_path / "control.sock"
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(str(path))
    sock.close()

    async with ControlClient(path) as client:
        with pytest.raises(DaemonNotRunning):
            await client.get_status()


def test_offline_status_when_never_started(tmp_path):
    status = offline_status(tmp_path / "state")
    assert status.state is DaemonState.STOPPED
    assert status.running is False
    assert status.recent_outcomes == []


def test_offline_status_reads_activity_log(tmp_path):
    state = StateDirectory(tmp_path)
    state.ensure()
    state.append_outcome(ExecutionOutcome(
        rule_id="r", rule_name="Rule", path="/w/a", action=TrashAction(), status=OutcomeStatus.SUCCESS,
    ))
    state.close_activity()

    status = offline_status(tmp_path)
    assert [o.path for o in status.recent_outcomes] == ["/w/a"]


def test_offline_status_with_stale_pid_is_crashed(tmp_path):
    (tmp_path / "autosort.pid").write_text("999999999\n")

    status = offline_status(tmp_path)

    assert status.state is DaemonState.CRASHED
    assert not status.running


def test_offline_status_with_live_pid_but_no_socket(tmp_path):
    (tmp_path / "autosort.pid").write_text(f"{os.getpid()}\n")

    status = offline_status(tmp_path)

    assert status.running
    assert status.pid == os.getpid()
    assert status.last_error == "Control Channel not reachable"
