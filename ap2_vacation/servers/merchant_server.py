"""
Merchant Agent FastAPI Server - Port 8001
Vacation catalog and cart signer with AP2 support
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..config import CORS_ORIGINS, MERCHANT_AGENT_CARD, MERCHANT_AGENT_ID, MERCHANT_AGENT_PORT
from ..agents.merchant_agent import MerchantAgent
from ..utils import MandateIntegrityService, build_signer_from_config, get_logger
from .a2a_endpoint import dispatch_a2a, health_payload

logger = get_logger("MerchantServer")


def create_app(merchant_agent: Optional[MerchantAgent] = None) -> FastAPI:
    merchant_agent = merchant_agent or MerchantAgent(MandateIntegrityService(build_signer_from_config()))

    app = FastAPI(
        title="Tropical Merchant Agent",
        description="Vacation catalog and cart signer with AP2 support",
        version="1.0.0",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ═══════════════════════════════════════════════════════════════
    # Well-Known & Health Endpoints
    # ═══════════════════════════════════════════════════════════════

    @app.get("/.well-known/agent.json")
    async def get_agent_card():
        """Return the agent's well-known card for A2A discovery."""
        return MERCHANT_AGENT_CARD

    @app.get("/health")
    async def health_check():
        return health_payload(MERCHANT_AGENT_ID, MERCHANT_AGENT_PORT)

    # ═══════════════════════════════════════════════════════════════
    # A2A Protocol Endpoint
    # ═══════════════════════════════════════════════════════════════

    @app.post(f"/a2a/{MERCHANT_AGENT_ID}")
    async def a2a_endpoint(request: Request):
        """
        A2A JSON-RPC 2.0 endpoint for inter-agent communication.
        Receives an IntentMandate and returns signed CartMandates.
        """
        return await dispatch_a2a(request, MERCHANT_AGENT_ID, merchant_agent.handle_message, logger)

    # ═══════════════════════════════════════════════════════════════
    # Direct API Endpoints
    # ═══════════════════════════════════════════════════════════════

    @app.get("/api/catalog")
    async def get_catalog():
        """The merchant's full package catalog."""
        return {"packages": [pkg.model_dump(mode="json") for pkg in merchant_agent.catalog]}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Merchant Agent server starting on port {MERCHANT_AGENT_PORT}")
    uvicorn.run(app, host="0.0.0.0", port=MERCHANT_AGENT_PORT)
