"""
Shopping Agent FastAPI Server - Port 8000
User-facing orchestrator for vacation shopping and AP2 checkout
"""

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..ap2_types import A2AMessage, SessionState
from ..config import (
    CORS_ORIGINS,
    CREDENTIALS_AGENT_ID,
    CREDENTIALS_AGENT_URL,
    LOG_DIR,
    MERCHANT_AGENT_ID,
    MERCHANT_AGENT_URL,
    SHOPPING_AGENT_CARD,
    SHOPPING_AGENT_ID,
    SHOPPING_AGENT_PORT,
)
from ..errors import AP2Error, ValidationError
from ..agents.shopping_agent import ShoppingAgent, ShoppingResult, create_shopping_agent
from ..utils import all_text, find_data, get_logger, new_envelope
from .a2a_endpoint import dispatch_a2a, health_payload

logger = get_logger("ShoppingServer")

ACTIONS = (
    "search_vacations",
    "select_cart",
    "get_payment_methods",
    "create_payment_mandate",
    "settle_payment",
    "retry_payment",
    "chat",
)


# ═══════════════════════════════════════════════════════════════
# Request/Response Models
# ═══════════════════════════════════════════════════════════════

class ShoppingRequest(BaseModel):
    action: Optional[str] = None
    message: Optional[str] = None
    session: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class DecodeRequest(BaseModel):
    token: str


def result_to_response(result: ShoppingResult) -> Dict[str, Any]:
    """Flatten a ShoppingResult into the action API's JSON shape."""
    payload = result.model_dump(mode="json", exclude_none=True, exclude={"session", "reply"})
    payload.update(
        response=result.reply,
        context_id=result.session.context_id,
        stage=result.session.stage.value,
        session=result.session.to_payload(),
    )
    return payload


def _require(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"'{key}' is required for this action", details={"field": key})
    return value


async def run_action(agent: ShoppingAgent, request: ShoppingRequest) -> ShoppingResult:
    """Route one action API call to the orchestrator."""
    if not request.action and not request.message:
        raise ValidationError("Message or action is required")

    action = request.action or "chat"
    session = SessionState.from_payload(request.session)

    if action == "search_vacations":
        return await agent.search_vacations(request.message or "", session)
    if action == "select_cart":
        return await agent.select_cart(session, _require(request.data, "cart_id"))
    if action == "get_payment_methods":
        return await agent.get_payment_methods(session)
    if action == "create_payment_mandate":
        return await agent.confirm_payment(session, _require(request.data, "payment_method_id"))
    if action == "settle_payment":
        return await agent.settle(session)
    if action == "retry_payment":
        return await agent.retry_payment(session)
    if action == "chat":
        return await agent.chat(request.message or "", session)

    raise ValidationError(f"Unknown action: {action}", details={"supported": list(ACTIONS)})


def create_app(shopping_agent: Optional[ShoppingAgent] = None) -> FastAPI:
    shopping_agent = shopping_agent or create_shopping_agent()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Shopping Agent server starting on port {SHOPPING_AGENT_PORT}")
        yield
        logger.info("Shopping Agent server shutting down")
        await shopping_agent.close()

    app = FastAPI(
        title="Tropical Shopping Agent",
        description="User-facing vacation shopping orchestrator with AP2 checkout capability",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AP2Error)
    async def ap2_error_handler(request: Request, exc: AP2Error):
        logger.warning(f"AP2 error: {exc.error_code} - {exc.message}", extra={"details": exc.details})
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    # ═══════════════════════════════════════════════════════════════
    # Well-Known & Health Endpoints
    # ═══════════════════════════════════════════════════════════════

    @app.get("/.well-known/agent.json")
    async def get_agent_card():
        """Return the agent's well-known card for A2A discovery."""
        return SHOPPING_AGENT_CARD

    @app.get("/health")
    async def health_check():
        return health_payload(SHOPPING_AGENT_ID, SHOPPING_AGENT_PORT)

    # ═══════════════════════════════════════════════════════════════
    # A2A Protocol Endpoint
    # ═══════════════════════════════════════════════════════════════

    async def handle_message(message: A2AMessage) -> A2AMessage:
        """Treat the envelope's text as a search; an optional ``session`` part continues one."""
        text = all_text(message)
        if not text:
            raise ValidationError("Invalid request - no message content")
        session = SessionState.from_payload(find_data(message, "session"))
        result = await shopping_agent.search_vacations(text, session)
        return (
            new_envelope()
            .with_context(message.context_id)
            .with_task(message.task_id)
            .with_text(result.reply or "Vacation intent processed")
            .with_data("shopping_result", result_to_response(result))
            .build()
        )

    @app.post(f"/a2a/{SHOPPING_AGENT_ID}")
    async def a2a_endpoint(request: Request):
        """A2A JSON-RPC 2.0 endpoint for inter-agent communication."""
        return await dispatch_a2a(request, SHOPPING_AGENT_ID, handle_message, logger)

    # ═══════════════════════════════════════════════════════════════
    # Frontend API Endpoints
    # ═══════════════════════════════════════════════════════════════

    @app.post("/api/shopping-agent")
    async def shopping_agent_api(request: ShoppingRequest):
        """
        Single action endpoint for the booking UI.

        The caller holds the session and sends it back with every request.
        """
        logger.info(f"Shopping action: {request.action or 'chat'}")
        result = await run_action(shopping_agent, request)
        return result_to_response(result)

    @app.post("/api/mandates/decode")
    async def decode_mandate(request: DecodeRequest):
        """Decode a mandate token for audit display. Nothing is verified."""
        return shopping_agent.integrity.decode(request.token)

    # ═══════════════════════════════════════════════════════════════
    # Log & Agent Network Endpoints
    # ═══════════════════════════════════════════════════════════════

    @app.get("/api/logs")
    async def get_logs(
        agent: str = Query("all", description="Agent name filter"),
        lines: int = Query(100, description="Number of lines to return"),
    ):
        """Recent JSON log entries from all agents, newest first."""
        log_entries = []
        for log_file in LOG_DIR.glob("*.log"):
            if agent != "all" and agent.lower() not in log_file.stem.lower():
                continue
            try:
                with open(log_file, "r") as f:
                    recent_lines = f.readlines()[-lines:]
            except OSError as e:
                logger.warning(f"Could not read log file {log_file}: {e}")
                continue
            for line in recent_lines:
                try:
                    log_entries.append(json.loads(line.strip()))
                except json.JSONDecodeError:
                    pass

        log_entries.sort(key=lambda x: x.get("timestamp", ""), reverse=True)
        return log_entries[:lines]

    @app.get("/api/agents")
    async def get_agents():
        """Well-known cards of the peer agents, marked online or offline."""
        agents = []
        peers = {MERCHANT_AGENT_ID: MERCHANT_AGENT_URL, CREDENTIALS_AGENT_ID: CREDENTIALS_AGENT_URL}

        async with httpx.AsyncClient(timeout=2.0) as client:
            for agent_name, base_url in peers.items():
                try:
                    response = await client.get(f"{base_url}/.well-known/agent.json")
                    response.raise_for_status()
                    card = response.json()
                    card["status"] = "online"
                    agents.append(card)
                except httpx.HTTPError:
                    agents.append({"name": agent_name, "url": base_url, "status": "offline"})

        return {"agents": [dict(SHOPPING_AGENT_CARD, status="online")] + agents}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=SHOPPING_AGENT_PORT)
