"""
A2A (Agent-to-Agent) Envelope and Message Client
With AP2 Protocol Extensions
"""

import httpx
import itertools
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from ..ap2_types import A2AMessage, A2ATask, DataPart, TextPart, to_iso, utc_now
from ..config import A2A_JSONRPC_VERSION, AP2_EXTENSION_URI
from ..errors import (
    AP2Error,
    ExpiredError,
    IntegrityError,
    SettlementError,
    StateTransitionError,
    UnauthorizedError,
    ValidationError,
)
from .logger import log_a2a_message

# AP2 Extension Header
AP2_EXTENSION_HEADER = "X-A2A-Extensions"

_message_counter = itertools.count(1)


def generate_message_id() -> str:
    """Unique per process: wall clock, a monotonic counter and a random suffix."""
    return f"msg-{int(time.time() * 1000)}-{next(_message_counter)}-{uuid.uuid4().hex[:6]}"


# ═══════════════════════════════════════════════════════════════
# Envelope builder & reader
# ═══════════════════════════════════════════════════════════════

class A2AMessageBuilder:
    """
    Fluent builder for A2A envelopes.

    Parts keep the order they were added in. The message id and timestamp
    are assigned by ``build``.
    """

    def __init__(self, role: str = "agent"):
        self._role = role
        self._parts = []
        self._context_id: Optional[str] = None
        self._task_id: Optional[str] = None

    def with_text(self, text: str) -> "A2AMessageBuilder":
        self._parts.append(TextPart(text=text))
        return self

    def with_data(self, key: str, value: Any) -> "A2AMessageBuilder":
        for part in self._parts:
            if isinstance(part, DataPart) and key in part.data:
                raise ValidationError(f"Duplicate data part key: {key}", details={"key": key})
        self._parts.append(DataPart(data={key: value}))
        return self

    def with_context(self, context_id: Optional[str]) -> "A2AMessageBuilder":
        self._context_id = context_id
        return self

    def with_task(self, task_id: Optional[str]) -> "A2AMessageBuilder":
        self._task_id = task_id
        return self

    def build(self) -> A2AMessage:
        return A2AMessage(
            message_id=generate_message_id(),
            context_id=self._context_id,
            task_id=self._task_id,
            role=self._role,
            parts=list(self._parts),
            timestamp=to_iso(utc_now()),
        )


def new_envelope(role: str = "agent") -> A2AMessageBuilder:
    return A2AMessageBuilder(role)


def find_data(message: A2AMessage, key: str) -> Optional[Any]:
    """Value of the first data part carrying ``key``, or None."""
    for part in message.parts:
        if isinstance(part, DataPart) and key in part.data:
            return part.data[key]
    return None


def all_text(message: A2AMessage) -> str:
    """All text parts, space-joined, in part order."""
    return " ".join(part.text for part in message.parts if isinstance(part, TextPart))


def extract_mandate_from_message(message: A2AMessage, mandate_type: str) -> Optional[Any]:
    """
    Extract a specific mandate type from an A2A message.

    Args:
        message: The A2A envelope
        mandate_type: One of "IntentMandate", "CartMandate", "PaymentMandate"

    Returns:
        The mandate payload if found, None otherwise
    """
    return find_data(message, f"ap2.mandates.{mandate_type}")


def parse_envelope(payload: Any) -> A2AMessage:
    try:
        return A2AMessage.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed A2A envelope",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


# ═══════════════════════════════════════════════════════════════
# JSON-RPC 2.0 wrapping
# ═══════════════════════════════════════════════════════════════

# JSON-RPC error codes per AP2 error type; anything else is -32603
_ERROR_CODES = {
    UnauthorizedError: -32001,
    ExpiredError: -32002,
    IntegrityError: -32003,
    SettlementError: -32004,
    StateTransitionError: -32602,
    ValidationError: -32602,
}

_ERRORS_BY_AP2_CODE = {cls.error_code: cls for cls in _ERROR_CODES}


def build_a2a_request(message: A2AMessage, request_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": request_id or str(uuid.uuid4()),
        "jsonrpc": A2A_JSONRPC_VERSION,
        "method": "message/send",
        "params": {"message": message.to_wire()},
    }


def build_a2a_response(
    request_id: str,
    message: Optional[A2AMessage] = None,
    error: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build a JSON-RPC 2.0 response for an A2A message.
    """
    if error:
        return {
            "id": request_id,
            "jsonrpc": A2A_JSONRPC_VERSION,
            "error": error,
        }

    task = A2ATask(id=f"task-{uuid.uuid4().hex[:12]}", status="completed", result=message)
    return {
        "id": request_id,
        "jsonrpc": A2A_JSONRPC_VERSION,
        "result": {"task": task.model_dump(mode="json", exclude_none=True)},
    }


def error_to_jsonrpc(error: AP2Error) -> Dict[str, Any]:
    code = next((c for cls, c in _ERROR_CODES.items() if isinstance(error, cls)), -32603)
    return {"code": code, "message": error.message, "data": error.to_dict()}


def error_from_jsonrpc(error: Dict[str, Any]) -> AP2Error:
    """Rebuild the typed AP2 error a peer reported."""
    data = error.get("data") or {}
    cls = _ERRORS_BY_AP2_CODE.get(data.get("error_code"), AP2Error)
    return cls(error.get("message", "A2A peer error"), details=data.get("details"))


def message_from_response(body: Dict[str, Any]) -> A2AMessage:
    if body.get("error"):
        raise error_from_jsonrpc(body["error"])
    task = (body.get("result") or {}).get("task") or {}
    if task.get("result") is None:
        raise ValidationError("A2A response carries no message", details={"task_id": task.get("id")})
    return parse_envelope(task["result"])


# ═══════════════════════════════════════════════════════════════
# Transports
# ═══════════════════════════════════════════════════════════════

class AgentTransport:
    """Sends one envelope to a peer agent and returns its reply envelope."""

    peer_name = "unknown"

    async def send(self, message: A2AMessage) -> A2AMessage:
        raise NotImplementedError

    async def close(self):
        pass


class LocalTransport(AgentTransport):
    """
    In-process transport to an agent's ``handle_message``.

    Envelopes are serialized to their wire form in both directions so the
    peer sees exactly what it would receive over HTTP.
    """

    def __init__(
        self,
        peer_name: str,
        handler: Callable[[A2AMessage], Awaitable[A2AMessage]],
        logger=None,
    ):
        self.peer_name = peer_name
        self.handler = handler
        self.logger = logger

    async def send(self, message: A2AMessage) -> A2AMessage:
        wire = message.to_wire()
        if self.logger:
            log_a2a_message(self.logger, "SENT", "shopping_agent", self.peer_name, wire)
        start_time = time.time()
        reply = await self.handler(parse_envelope(wire))
        reply_wire = reply.to_wire()
        if self.logger:
            log_a2a_message(
                self.logger, "RECEIVED", self.peer_name, "shopping_agent", reply_wire,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
        return parse_envelope(reply_wire)


class A2AClient(AgentTransport):
    """
    HTTP client for A2A protocol communication between agents.
    Includes AP2 extension headers for payment-related messages.
    """

    def __init__(
        self,
        agent_name: str,
        peer_name: str,
        target_url: str,
        timeout: float = 30.0,
        logger=None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.agent_name = agent_name
        self.peer_name = peer_name
        self.target_url = target_url
        self.logger = logger
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, message: A2AMessage) -> A2AMessage:
        """
        Send an A2A envelope to the peer agent.

        Errors the peer reports are re-raised as the matching AP2 error;
        transport failures propagate as httpx exceptions.
        """
        request_body = build_a2a_request(message)
        headers = {
            "Content-Type": "application/json",
            "X-A2A-Agent": self.agent_name,
            "X-A2A-Message-ID": message.message_id,
            AP2_EXTENSION_HEADER: AP2_EXTENSION_URI,
        }

        if self.logger:
            log_a2a_message(self.logger, "SENT", self.agent_name, self.peer_name, request_body["params"]["message"])

        start_time = time.time()
        try:
            response = await self.client.post(self.target_url, json=request_body, headers=headers)
        except httpx.HTTPError as e:
            if self.logger:
                self.logger.error(
                    f"A2A request failed: {e}",
                    extra={"type": "a2a_error", "target_url": self.target_url, "error": str(e)},
                )
            raise

        duration_ms = (time.time() - start_time) * 1000
        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise ValidationError("A2A peer returned a non-JSON body", details={"status": response.status_code})

        if "error" not in body:
            response.raise_for_status()

        reply = message_from_response(body)
        if self.logger:
            log_a2a_message(
                self.logger, "RECEIVED", self.peer_name, self.agent_name, reply.to_wire(),
                duration_ms=round(duration_ms, 2),
            )
        return reply

    async def get_agent_card(self, base_url: str) -> Dict[str, Any]:
        """Fetch an agent's well-known card."""
        response = await self.client.get(f"{base_url}/.well-known/agent.json")
        response.raise_for_status()
        return response.json()

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
