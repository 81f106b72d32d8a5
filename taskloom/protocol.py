"""Control-channel messages.

One newline-terminated JSON request per connection, answered by one
newline-terminated JSON response. Requests are tagged by ``cmd``. Responses
are flat objects: ``{"ok": bool, "error": str | null, ...data}``.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from taskloom.exceptions import ProtocolError

MAX_MESSAGE_BYTES = 1024 * 1024


class SpawnRequest(BaseModel):
    cmd: Literal["spawn"] = "spawn"
    task_id: str
    executor: str | None = None
    model: str | None = None
    timeout: int | None = Field(default=None, ge=1)


class ListAgentsRequest(BaseModel):
    cmd: Literal["agents"] = "agents"
    status: str | None = None
    task_id: str | None = None


class KillRequest(BaseModel):
    cmd: Literal["kill"] = "kill"
    agent_id: str | None = None
    all: bool = False
    force: bool = False


class HeartbeatRequest(BaseModel):
    cmd: Literal["heartbeat"] = "heartbeat"
    agent_id: str


class StatusRequest(BaseModel):
    cmd: Literal["status"] = "status"


class ShutdownRequest(BaseModel):
    cmd: Literal["shutdown"] = "shutdown"
    kill_agents: bool = False


class GraphChangedRequest(BaseModel):
    cmd: Literal["graph_changed"] = "graph_changed"


class PauseRequest(BaseModel):
    cmd: Literal["pause"] = "pause"


class ResumeRequest(BaseModel):
    cmd: Literal["resume"] = "resume"


class ReconfigureRequest(BaseModel):
    cmd: Literal["reconfigure"] = "reconfigure"
    config: dict[str, Any] = Field(default_factory=dict)
    persist: bool = False


Request = Annotated[
    SpawnRequest
    | ListAgentsRequest
    | KillRequest
    | HeartbeatRequest
    | StatusRequest
    | ShutdownRequest
    | GraphChangedRequest
    | PauseRequest
    | ResumeRequest
    | ReconfigureRequest,
    Field(discriminator="cmd"),
]

_request_adapter: TypeAdapter[Request] = TypeAdapter(Request)


class Response(BaseModel):
    ok: bool
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> Response:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, **data: Any) -> Response:
        return cls(ok=False, error=error, data=data)


def encode_request(request: BaseModel) -> bytes:
    return request.model_dump_json().encode() + b"\n"


def decode_request(raw: bytes) -> Request:
    """Parse one request line.

    Raises:
        ProtocolError: On invalid JSON, unknown ``cmd`` or bad fields
    """
    try:
        return _request_adapter.validate_json(raw.strip())
    except ValidationError as e:
        raise ProtocolError("Invalid request", {"errors": e.errors(include_url=False)}) from e


def encode_response(response: Response) -> bytes:
    payload = {**response.data, "ok": response.ok, "error": response.error}
    return json.dumps(payload, default=str).encode() + b"\n"


def decode_response(raw: bytes) -> Response:
    """Parse one response line.

    Raises:
        ProtocolError: If the line is not a JSON object with an ``ok`` field
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid response: {e.msg}") from e
    if not isinstance(payload, dict) or "ok" not in payload:
        raise ProtocolError("Response is missing 'ok'")
    ok = bool(payload.pop("ok"))
    error = payload.pop("error", None)
    return Response(ok=ok, error=error, data=payload)
