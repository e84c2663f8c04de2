"""
Control Channel endpoints.

Includes:
- POST /rpc - request/response envelope for every operation
- GET /subscribe - newline-delimited DaemonStatus stream
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from autosort.exceptions import ChannelProtocolError, format_rule_not_found
from autosort.models.schemas import ControlRequest

if TYPE_CHECKING:
    from domains.daemon.service import DaemonService

router = APIRouter()


# Operation parameters ---------------------------------------------------------------

class RuleIdParams(BaseModel):
    id: str = Field(min_length=1)


class AddRuleParams(BaseModel):
    rule: Dict[str, Any]


class EditRuleParams(RuleIdParams):
    changes: Dict[str, Any]


class ToggleRuleParams(RuleIdParams):
    enabled: Optional[bool] = None


class TailLogParams(BaseModel):
    n: int = Field(default=20, ge=0, le=10000)


def _params(model: type, params: Dict[str, Any]):
    try:
        return model.model_validate(params)
    except ValidationError as e:
        raise ChannelProtocolError(f"Invalid parameters: {e}") from e


# Operation handlers -----------------------------------------------------------------

async def get_status(service: "DaemonService", params: Dict[str, Any]):
    return service.get_status()


async def list_rules(service: "DaemonService", params: Dict[str, Any]):
    return service.engine.list_rules()


async def add_rule(service: "DaemonService", params: Dict[str, Any]):
    service.check_rule_changes_allowed()
    p = _params(AddRuleParams, params)
    return await service.engine.add_rule(p.rule)


async def edit_rule(service: "DaemonService", params: Dict[str, Any]):
    service.check_rule_changes_allowed()
    p = _params(EditRuleParams, params)
    return await service.engine.edit_rule(p.id, p.changes)


async def delete_rule(service: "DaemonService", params: Dict[str, Any]):
    service.check_rule_changes_allowed()
    p = _params(RuleIdParams, params)
    if not await service.engine.delete_rule(p.id):
        raise format_rule_not_found(p.id)
    return {"deleted": p.id}


async def toggle_rule(service: "DaemonService", params: Dict[str, Any]):
    service.check_rule_changes_allowed()
    p = _params(ToggleRuleParams, params)
    return await service.engine.toggle_rule(p.id, p.enabled)


async def reload(service: "DaemonService", params: Dict[str, Any]):
    return await service.reload()


async def stop(service: "DaemonService", params: Dict[str, Any]):
    service.request_stop()
    return {"stopping": True}


async def tail_log(service: "DaemonService", params: Dict[str, Any]):
    p = _params(TailLogParams, params)
    return service.engine.tail(p.n)


OPERATIONS: Dict[str, Callable[["DaemonService", Dict[str, Any]], Awaitable[Any]]] = {
    "get_status": get_status,
    "list_rules": list_rules,
    "add_rule": add_rule,
    "edit_rule": edit_rule,
    "delete_rule": delete_rule,
    "toggle_rule": toggle_rule,
    "reload": reload,
    "stop": stop,
    "tail_log": tail_log,
}


# Routes -----------------------------------------------------------------------------

@router.post("/rpc")
async def rpc(request: Request):
    """
    Execute one Control Channel operation.

    Body: ``{"op": <operation>, "params": {...}}``

    Returns:
        ``{"ok": result}``; failures are rendered as ``{"error": {kind, message}}``
    """
    service = request.app.state.service
    control_request = await _parse_request(request, service.settings.max_request_bytes)

    logger.debug(f"Control request: {control_request.op}")
    result = await OPERATIONS[control_request.op](service, control_request.params)
    return {"ok": jsonable_encoder(result)}


@router.get("/subscribe")
async def subscribe(request: Request):
    """
    Stream status snapshots as newline-delimited JSON.

    The first line is the current status; each following line is a distinct
    change. The stream ends when the service stops.
    """
    service = request.app.state.service
    broadcaster = service.broadcaster

    async def stream():
        async for status in broadcaster.subscribe(initial=service.get_status()):
            yield status.model_dump_json() + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


async def _parse_request(request: Request, limit: int) -> ControlRequest:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise ChannelProtocolError(f"Request exceeds {limit} bytes")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise ChannelProtocolError(f"Request exceeds {limit} bytes")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ChannelProtocolError(f"Request is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ChannelProtocolError("Request must be a JSON object")
    if isinstance(payload.get("op"), str) and payload["op"] not in OPERATIONS:
        raise ChannelProtocolError(f"Unknown operation '{payload['op']}'")

    try:
        return ControlRequest.model_validate(payload)
    except ValidationError as e:
        raise ChannelProtocolError(f"Malformed request: {e}") from e
