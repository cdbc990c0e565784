"""
Credentials Agent FastAPI Server - Port 8002
Payment credential provider with AP2 support
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..config import CORS_ORIGINS, CREDENTIALS_AGENT_CARD, CREDENTIALS_AGENT_ID, CREDENTIALS_AGENT_PORT
from ..agents.credentials_agent import CredentialsAgent
from ..utils import MandateIntegrityService, build_signer_from_config, get_logger
from .a2a_endpoint import dispatch_a2a, health_payload

logger = get_logger("CredentialsServer")


def create_app(credentials_agent: Optional[CredentialsAgent] = None) -> FastAPI:
    credentials_agent = credentials_agent or CredentialsAgent(
        integrity=MandateIntegrityService(build_signer_from_config())
    )

    app = FastAPI(
        title="Tropical Credentials Provider",
        description="Payment credential provider with AP2 support",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/.well-known/agent.json")
    async def get_agent_card():
        """Return the agent's well-known card for A2A discovery."""
        return CREDENTIALS_AGENT_CARD

    @app.get("/health")
    async def health_check():
        return health_payload(CREDENTIALS_AGENT_ID, CREDENTIALS_AGENT_PORT)

    @app.post(f"/a2a/{CREDENTIALS_AGENT_ID}")
    async def a2a_endpoint(request: Request):
        """
        A2A JSON-RPC 2.0 endpoint for inter-agent communication.
        Handles payment method listing and PaymentMandate intake.
        """
        return await dispatch_a2a(request, CREDENTIALS_AGENT_ID, credentials_agent.handle_message, logger)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Credentials Agent server starting on port {CREDENTIALS_AGENT_PORT}")
    uvicorn.run(app, host="0.0.0.0", port=CREDENTIALS_AGENT_PORT)
