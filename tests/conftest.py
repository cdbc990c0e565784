"""Shared fixtures: a controllable clock, in-process agents and envelope helpers."""

import os

# No Ollama and no log files during tests
os.environ["LLM_ENABLED"] = "false"
os.environ["LOG_TO_FILE"] = "false"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import time
from datetime import datetime, timezone

import pytest

from ap2_vacation.ap2_types import ConversationTurn, IntentMandate, to_iso
from ap2_vacation.agents.catalog import FirstNMatcher
from ap2_vacation.agents.credentials_agent import CredentialsAgent
from ap2_vacation.agents.merchant_agent import MerchantAgent
from ap2_vacation.agents.payment_agent import SimulatedPaymentProcessor
from ap2_vacation.agents.shopping_agent import ShoppingAgent
from ap2_vacation.utils import (
    CALLER_IDENTITY_KEY,
    HmacSigner,
    LocalTransport,
    MandateIntegrityService,
    new_envelope,
)

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
TRUSTED_ID = "trusted_shopping_agent"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start=None):
        self.current = start if start is not None else time.time()

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += seconds


class EchoChatModel:
    """Deterministic stand-in for the Ollama chat model."""

    def __init__(self):
        self.calls = []

    def start_history(self):
        return [ConversationTurn(type="system", content="You are a vacation assistant.")]

    async def reply(self, history):
        self.calls.append([turn.model_copy() for turn in history])
        return f"Looking for: {history[-1].content}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def integrity(clock):
    return MandateIntegrityService(HmacSigner(TEST_SECRET), clock=clock)


@pytest.fixture
def merchant(integrity):
    return MerchantAgent(integrity, matcher=FirstNMatcher())


@pytest.fixture
def credentials(integrity):
    return CredentialsAgent(integrity=integrity)


@pytest.fixture
def processor(integrity):
    return SimulatedPaymentProcessor(integrity)


@pytest.fixture
def chat_model():
    return EchoChatModel()


@pytest.fixture
def shopping_agent(integrity, merchant, credentials, processor, chat_model):
    return ShoppingAgent(
        integrity,
        merchant=LocalTransport("merchant_agent", merchant.handle_message),
        credentials=LocalTransport("credentials_agent", credentials.handle_message),
        chat_model=chat_model,
        processor=processor,
    )


@pytest.fixture
def intent(clock):
    return IntentMandate(
        natural_language_description="tropical beach vacation",
        intent_expiry=to_iso(datetime.fromtimestamp(clock() + 24 * 3600, tz=timezone.utc)),
    )


@pytest.fixture
def intent_envelope(intent):
    def build(caller=TRUSTED_ID, context_id="ctx-test-1"):
        builder = (
            new_envelope()
            .with_context(context_id)
            .with_text("Find vacation packages matching user's intent")
            .with_data("ap2.mandates.IntentMandate", intent.model_dump(mode="json", exclude_none=True))
        )
        if caller is not None:
            builder = builder.with_data(CALLER_IDENTITY_KEY, caller)
        return builder.build()
    return build
