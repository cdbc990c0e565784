"""
A2A JSON-RPC endpoint shared by the agent servers
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from ..ap2_types import A2AMessage
from ..config import AP2_EXTENSION_URI
from ..errors import AP2Error
from ..utils import build_a2a_response, error_to_jsonrpc, log_a2a_message, parse_envelope
from ..utils.a2a_client import AP2_EXTENSION_HEADER

MessageHandler = Callable[[A2AMessage], Awaitable[A2AMessage]]


def health_payload(agent_id: str, port: int) -> dict:
    return {
        "status": "healthy",
        "agent": agent_id,
        "port": port,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def dispatch_a2a(
    request: Request,
    agent_id: str,
    handler: MessageHandler,
    logger: logging.Logger,
) -> JSONResponse:
    """
    Run one ``message/send`` call through ``handler``.

    AP2 errors become JSON-RPC errors with the error's HTTP status; anything
    unexpected is logged with its traceback and reported as -32603.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(
            build_a2a_response(None, error={"code": -32700, "message": "Parse error"}),
            status_code=400,
        )
    if not isinstance(body, dict):
        return JSONResponse(
            build_a2a_response(None, error={"code": -32600, "message": "Invalid request"}),
            status_code=400,
        )

    request_id = body.get("id", "unknown")
    from_agent = request.headers.get("X-A2A-Agent", "unknown")

    if body.get("method") != "message/send":
        logger.warning(f"Unsupported A2A method: {body.get('method')}")
        return JSONResponse(
            build_a2a_response(request_id, error={"code": -32601, "message": "Method not found"}),
            status_code=404,
        )

    if AP2_EXTENSION_URI not in request.headers.get(AP2_EXTENSION_HEADER, ""):
        logger.debug(f"Request from {from_agent} did not declare the AP2 extension")

    try:
        message = parse_envelope((body.get("params") or {}).get("message"))
        log_a2a_message(logger, "RECEIVED", from_agent, agent_id, message.to_wire())
        reply = await handler(message)
    except AP2Error as e:
        logger.warning(
            f"A2A request rejected: {e.error_code} - {e.message}",
            extra={"error_code": e.error_code, "details": e.details},
        )
        return JSONResponse(
            build_a2a_response(request_id, error=error_to_jsonrpc(e)),
            status_code=e.http_status,
        )
    except Exception as e:
        logger.error(f"A2A endpoint error: {e}", exc_info=True)
        return JSONResponse(
            build_a2a_response(request_id, error={"code": -32603, "message": "Internal error"}),
            status_code=500,
        )

    log_a2a_message(logger, "SENT", agent_id, from_agent, reply.to_wire())
    return JSONResponse(build_a2a_response(request_id, message=reply))
