"""Tests for the Merchant Agent, its catalog matcher and caller identity checks."""

import asyncio
from datetime import datetime, timezone

import pytest

from ap2_vacation.ap2_types import CartMandate, IntentMandate, parse_timestamp, to_iso
from ap2_vacation.agents import catalog
from ap2_vacation.agents.catalog import VACATION_PACKAGES, FirstNMatcher, OllamaPackageMatcher, parse_package_ids
from ap2_vacation.agents.merchant_agent import MerchantAgent
from ap2_vacation.errors import ExpiredError, UnauthorizedError, ValidationError
from ap2_vacation.utils import (
    CALLER_IDENTITY_KEY,
    AgentCredential,
    AllowListVerifier,
    all_text,
    find_data,
    new_envelope,
)


def carts_from(reply):
    return [CartMandate.model_validate(raw) for raw in find_data(reply, "cart_mandates")]


class FixedMatcher:
    def __init__(self, ids):
        self.ids = ids

    async def match(self, description, packages):
        return list(self.ids)


class FakeOllama:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error

    async def chat(self, **kwargs):
        if self.error:
            raise self.error
        return {"message": {"content": self.content}}


class TestIdentity:
    def test_allow_list_returns_credential(self):
        verifier = AllowListVerifier(["trusted_shopping_agent"])
        assert verifier.verify("trusted_shopping_agent") == AgentCredential("trusted_shopping_agent")

    @pytest.mark.parametrize("presented", [None, "", "rogue_agent", 42])
    def test_anything_else_is_unauthorized(self, presented):
        with pytest.raises(UnauthorizedError):
            AllowListVerifier(["trusted_shopping_agent"]).verify(presented)


class TestMerchantAgent:
    def test_returns_three_signed_carts(self, merchant, integrity, intent_envelope):
        reply = asyncio.run(merchant.handle_message(intent_envelope()))
        carts = carts_from(reply)
        assert len(carts) == 3
        assert all_text(reply) == "Found 3 vacation packages matching your request."
        assert reply.context_id == "ctx-test-1"
        for cart in carts:
            integrity.verify_cart_mandate(cart)

    def test_line_items_follow_pricing_policy(self, merchant, intent_envelope):
        cart = carts_from(asyncio.run(merchant.handle_message(intent_envelope())))[0]
        details = cart.contents.payment_request.details
        bali = VACATION_PACKAGES[0]

        assert [item.label for item in details.display_items] == [bali.name, "Travel Insurance", "Service Fee"]
        assert [item.amount.value for item in details.display_items] == [2124.15, 124.95, 249.9]
        assert details.total.label == "Total Amount"
        assert details.total.amount.value == bali.price
        assert details.total.amount.currency == "USD"
        assert cart.contents.merchant_name == "Tropical Paradise Vacations"
        assert cart.contents.payment_request.method_data[0].data["supported_networks"] == ["visa", "mastercard", "amex"]

    def test_cart_expiry_is_two_hours_out(self, merchant, clock, intent_envelope):
        cart = carts_from(asyncio.run(merchant.handle_message(intent_envelope())))[0]
        expiry = parse_timestamp(cart.contents.cart_expiry).timestamp()
        assert abs(expiry - (clock() + 2 * 3600)) < 1

    def test_cart_ids_are_unique(self, merchant, intent_envelope):
        carts = carts_from(asyncio.run(merchant.handle_message(intent_envelope())))
        assert len({c.contents.id for c in carts}) == 3
        assert len({c.contents.payment_request.details.id for c in carts}) == 3

    def test_untrusted_caller_is_rejected(self, merchant, intent_envelope):
        with pytest.raises(UnauthorizedError):
            asyncio.run(merchant.handle_message(intent_envelope(caller="rogue_agent")))

    def test_missing_identity_is_rejected(self, merchant, intent_envelope):
        with pytest.raises(UnauthorizedError):
            asyncio.run(merchant.handle_message(intent_envelope(caller=None)))

    def test_missing_intent_is_validation_error(self, merchant):
        message = new_envelope().with_data(CALLER_IDENTITY_KEY, "trusted_shopping_agent").build()
        with pytest.raises(ValidationError):
            asyncio.run(merchant.handle_message(message))

    def test_expired_intent_is_rejected(self, merchant, clock, intent_envelope):
        clock.advance(25 * 3600)
        with pytest.raises(ExpiredError):
            asyncio.run(merchant.handle_message(intent_envelope()))

    def test_no_matches_gives_empty_cart_list(self, integrity, intent_envelope):
        agent = MerchantAgent(integrity, matcher=FixedMatcher([]))
        reply = asyncio.run(agent.handle_message(intent_envelope()))
        assert carts_from(reply) == []
        assert all_text(reply) == "Found 0 vacation packages matching your request."

    def test_unknown_ids_from_matcher_are_skipped(self, integrity, intent_envelope):
        agent = MerchantAgent(integrity, matcher=FixedMatcher(["vac-404", "vac-006", "vac-006"]))
        carts = carts_from(asyncio.run(agent.handle_message(intent_envelope())))
        assert [c.contents.payment_request.details.total.amount.value for c in carts] == [5499]

    def test_intent_restricted_to_other_merchant(self, merchant, clock):
        intent = IntentMandate(
            natural_language_description="beach",
            merchants=["Some Other Travel Co"],
            intent_expiry=to_iso(datetime.fromtimestamp(clock() + 3600, tz=timezone.utc)),
        )
        message = (
            new_envelope()
            .with_data("ap2.mandates.IntentMandate", intent.model_dump(mode="json", exclude_none=True))
            .with_data(CALLER_IDENTITY_KEY, "trusted_shopping_agent")
            .build()
        )
        assert carts_from(asyncio.run(merchant.handle_message(message))) == []


class TestPackageMatcher:
    def test_first_n_matcher(self):
        ids = asyncio.run(FirstNMatcher().match("anything", VACATION_PACKAGES))
        assert ids == ["vac-001", "vac-002", "vac-003"]

    def test_parse_package_ids_handles_fences_and_think_blocks(self):
        content = '<think>beaches...</think>\n```json\n{"package_ids": ["vac-002", "vac-001", "vac-002"]}\n```'
        assert parse_package_ids(content) == ["vac-002", "vac-001"]

    def test_parse_package_ids_rejects_garbage(self):
        assert parse_package_ids("no json here") == []
        assert parse_package_ids('{"package_ids": "vac-001"}') == []

    def test_ollama_matcher_keeps_known_ids(self, monkeypatch):
        monkeypatch.setattr(catalog, "LLM_ENABLED", True)
        matcher = OllamaPackageMatcher(client=FakeOllama('{"package_ids": ["vac-006", "vac-999", "vac-008"]}'))
        assert asyncio.run(matcher.match("safari or trekking", VACATION_PACKAGES)) == ["vac-006", "vac-008"]

    def test_ollama_failure_falls_back_to_first_three(self, monkeypatch):
        monkeypatch.setattr(catalog, "LLM_ENABLED", True)
        matcher = OllamaPackageMatcher(client=FakeOllama(error=ConnectionError("ollama down")))
        assert asyncio.run(matcher.match("beach", VACATION_PACKAGES)) == ["vac-001", "vac-002", "vac-003"]

    def test_llm_disabled_uses_fallback(self):
        matcher = OllamaPackageMatcher(client=FakeOllama(error=AssertionError("must not be called")))
        assert asyncio.run(matcher.match("beach", VACATION_PACKAGES)) == ["vac-001", "vac-002", "vac-003"]
