"""
Tropical Paradise Vacations - AP2 Vacation Booking
Shared Configuration Module
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "logs")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Ollama Configuration (conversation + package matching)
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3:8b")
OLLAMA_TIMEOUT = int(os.getenv("OLLAMA_TIMEOUT", "30"))
LLM_ENABLED = os.getenv("LLM_ENABLED", "true").lower() == "true"

# Server Ports
SHOPPING_AGENT_PORT = int(os.getenv("SHOPPING_AGENT_PORT", "8000"))
MERCHANT_AGENT_PORT = int(os.getenv("MERCHANT_AGENT_PORT", "8001"))
CREDENTIALS_AGENT_PORT = int(os.getenv("CREDENTIALS_AGENT_PORT", "8002"))

# Agent URLs
SHOPPING_AGENT_URL = os.getenv("SHOPPING_AGENT_URL", f"http://localhost:{SHOPPING_AGENT_PORT}")
MERCHANT_AGENT_URL = os.getenv("MERCHANT_AGENT_URL", f"http://localhost:{MERCHANT_AGENT_PORT}")
CREDENTIALS_AGENT_URL = os.getenv("CREDENTIALS_AGENT_URL", f"http://localhost:{CREDENTIALS_AGENT_PORT}")

# When true the Shopping Agent talks to its peers over HTTP, otherwise in-process
A2A_REMOTE_PEERS = os.getenv("A2A_REMOTE_PEERS", "false").lower() == "true"
A2A_TIMEOUT = float(os.getenv("A2A_TIMEOUT", "30"))

# AP2 Protocol Configuration
AP2_VERSION = os.getenv("AP2_VERSION", "v1")
AP2_EXTENSION_URI = "https://github.com/google-agentic-commerce/ap2/v1"
A2A_PROTOCOL_VERSION = "0.3.0"
A2A_JSONRPC_VERSION = "2.0"

# Mandate lifetimes
CART_TOKEN_TTL_MINUTES = int(os.getenv("CART_TOKEN_TTL_MINUTES", "15"))
CART_EXPIRY_MINUTES = int(os.getenv("CART_EXPIRY_MINUTES", "120"))
PAYMENT_TOKEN_TTL_MINUTES = int(os.getenv("PAYMENT_TOKEN_TTL_MINUTES", "60"))
INTENT_EXPIRY_HOURS = int(os.getenv("INTENT_EXPIRY_HOURS", "24"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "true").lower() == "true"

# Signing (HS256 uses the shared secret, ES256 the PEM private key)
AP2_SIGNING_ALGORITHM = os.getenv("AP2_SIGNING_ALGORITHM", "HS256")
AP2_SIGNING_SECRET = os.getenv("AP2_SIGNING_SECRET", "tropical-ap2-demo-secret-2025-not-for-production")
AP2_SIGNING_PRIVATE_KEY_PEM = os.getenv("AP2_SIGNING_PRIVATE_KEY_PEM", "")
MERCHANT_KEY_ID = "merchant-key-2024"
USER_KEY_ID = "user-key-2024"

# Merchant Configuration
MERCHANT_ID = "tropical-paradise-vacations"
MERCHANT_NAME = "Tropical Paradise Vacations"
MERCHANT_AGENT_SUBJECT = "merchant-agent-001"
PAYMENT_PROCESSOR_AUDIENCE = "payment-processor"

# User Configuration (demo payer)
USER_DID = os.getenv("USER_DID", "did:example:user123")
USER_CREDENTIAL_SUBJECT = "user-credential"
MERCHANT_AUDIENCE = "merchant"
DEMO_PAYER_NAME = os.getenv("DEMO_PAYER_NAME", "Demo User")
DEMO_PAYER_EMAIL = os.getenv("DEMO_PAYER_EMAIL", "user@example.com")

# Agent IDs
TRUSTED_SHOPPING_AGENT_ID = os.getenv("TRUSTED_SHOPPING_AGENT_ID", "trusted_shopping_agent")
SHOPPING_AGENT_ID = "shopping_agent"
MERCHANT_AGENT_ID = "merchant_agent"
CREDENTIALS_AGENT_ID = "credentials_agent"

# CORS Configuration
CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


# Well-Known Agent Cards
def get_agent_card(agent_name: str, agent_id: str, port: int, skills: list, description: str) -> dict:
    """Generate a well-known agent card for A2A discovery"""
    return {
        "name": agent_name,
        "description": description,
        "version": "1.0.0",
        "url": f"http://localhost:{port}/a2a/{agent_id}",
        "protocolVersion": A2A_PROTOCOL_VERSION,
        "preferredTransport": "JSONRPC",
        "defaultInputModes": ["json"],
        "defaultOutputModes": ["json"],
        "capabilities": {
            "extensions": [
                {
                    "description": "Supports the Agent Payments Protocol",
                    "required": True,
                    "uri": AP2_EXTENSION_URI
                }
            ]
        },
        "skills": skills
    }


# Shopping Agent Card
SHOPPING_AGENT_CARD = get_agent_card(
    agent_name="TropicalShoppingAgent",
    agent_id=SHOPPING_AGENT_ID,
    port=SHOPPING_AGENT_PORT,
    description="User-facing vacation shopping orchestrator with AP2 checkout capability",
    skills=[
        {
            "id": "search_vacations",
            "name": "Search Vacations",
            "description": "Turns the conversation into an Intent Mandate and collects signed carts",
            "tags": ["vacation", "intent"]
        },
        {
            "id": "checkout",
            "name": "AP2 Checkout",
            "description": "Signs the Payment Mandate for a selected cart and payment method",
            "tags": ["checkout", "payment", "ap2"]
        }
    ]
)

# Merchant Agent Card
MERCHANT_AGENT_CARD = get_agent_card(
    agent_name="TropicalMerchantAgent",
    agent_id=MERCHANT_AGENT_ID,
    port=MERCHANT_AGENT_PORT,
    description="Vacation merchant agent that signs Cart Mandates for matching packages",
    skills=[
        {
            "id": "create_cart_mandates",
            "name": "Create Cart Mandates",
            "description": "Matches an IntentMandate against the catalog and returns signed carts",
            "tags": ["vacation", "catalog", "cart"]
        }
    ]
)

# Credentials Agent Card
CREDENTIALS_AGENT_CARD = get_agent_card(
    agent_name="TropicalCredentialsProvider",
    agent_id=CREDENTIALS_AGENT_ID,
    port=CREDENTIALS_AGENT_PORT,
    description="Credentials provider holding the user's payment methods",
    skills=[
        {
            "id": "get_payment_methods",
            "name": "List Payment Methods",
            "description": "Returns the user's available payment methods",
            "tags": ["payment", "credentials"]
        },
        {
            "id": "initiate_payment",
            "name": "Initiate Payment",
            "description": "Receives and checks a signed PaymentMandate",
            "tags": ["payment", "mandate"]
        }
    ]
)
