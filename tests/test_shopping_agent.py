"""End-to-end tests of the Shopping Agent state machine with in-process peers."""

import asyncio

import pytest

from ap2_vacation.ap2_types import SessionState, TransactionStage
from ap2_vacation.agents.catalog import VACATION_PACKAGES
from ap2_vacation.agents.payment_agent import DeclineOnce, SimulatedPaymentProcessor
from ap2_vacation.agents.shopping_agent import ShoppingAgent
from ap2_vacation.errors import IntegrityError, StateTransitionError, UnauthorizedError, ValidationError
from ap2_vacation.utils import AgentCredential, AgentTransport, LocalTransport, digest, new_envelope

Stage = TransactionStage


class WrongContextTransport(AgentTransport):
    """Peer that answers on somebody else's context."""

    peer_name = "merchant_agent"

    async def send(self, message):
        return new_envelope().with_context("ctx-someone-else").with_data("cart_mandates", []).build()


class TamperingTransport(AgentTransport):
    """Man in the middle that discounts every cart after the merchant signed it."""

    peer_name = "merchant_agent"

    def __init__(self, inner):
        self.inner = inner

    async def send(self, message):
        reply = await self.inner.send(message)
        wire = reply.to_wire()
        for part in wire["parts"]:
            for cart in part.get("data", {}).get("cart_mandates", []):
                cart["contents"]["payment_request"]["details"]["total"]["amount"]["value"] = 1.0
        return type(reply).model_validate(wire)


def search(agent, message, session=None):
    return asyncio.run(agent.search_vacations(message, session))


def checkout_to_signed(agent, method_id="pm-001"):
    result = search(agent, "tropical beach vacation")
    cart_id = result.cart_mandates[0].contents.id
    result = asyncio.run(agent.select_cart(result.session, cart_id))
    return asyncio.run(agent.confirm_payment(result.session, method_id))


class TestHappyPath:
    def test_tropical_beach_vacation(self, shopping_agent, integrity):
        result = search(shopping_agent, "tropical beach vacation")
        session = result.session
        assert session.stage == Stage.CARTS_OFFERED
        assert result.intent_mandate.natural_language_description == "tropical beach vacation"
        assert result.intent_mandate.requires_refundability is True
        assert 1 <= len(result.cart_mandates) <= 3
        for cart in result.cart_mandates:
            integrity.verify_cart_mandate(cart)

        cart = result.cart_mandates[0]
        result = asyncio.run(shopping_agent.select_cart(session, cart.contents.id))
        assert result.session.stage == Stage.PAYMENT_METHODS_OFFERED
        assert [m.id for m in result.payment_methods] == ["pm-001", "pm-002", "pm-003"]

        result = asyncio.run(shopping_agent.confirm_payment(result.session, "pm-001"))
        assert result.session.stage == Stage.PAYMENT_MANDATE_SIGNED
        assert result.payment_status == "ready"
        mandate = result.payment_mandate
        contents = mandate.payment_mandate_contents
        assert contents.payment_details_total == cart.contents.payment_request.details.total
        assert contents.payment_details_id == cart.contents.payment_request.details.id
        assert contents.payment_response.details == {"payment_method_id": "pm-001"}
        assert contents.merchant_agent == "Tropical Paradise Vacations"
        claims = integrity.verify_payment_mandate(mandate, cart=cart)
        assert digest(cart.contents) in claims.transaction_data

        result = asyncio.run(shopping_agent.settle(result.session))
        assert result.session.stage == Stage.PAYMENT_SETTLED
        assert result.receipt.total_charged == cart.contents.payment_request.details.total
        assert result.session.receipt == result.receipt

    def test_input_session_is_not_mutated(self, shopping_agent):
        first = search(shopping_agent, "tropical beach vacation")
        snapshot = first.session.model_copy(deep=True)
        asyncio.run(shopping_agent.select_cart(first.session, first.cart_mandates[0].contents.id))
        assert first.session == snapshot

    def test_conversation_history_is_typed(self, shopping_agent, chat_model):
        result = search(shopping_agent, "tropical beach vacation")
        assert [turn.type for turn in result.session.history] == ["system", "human", "ai"]
        assert result.reply == "Looking for: tropical beach vacation"
        assert chat_model.calls[0][-1].content == "tropical beach vacation"


class TestConversationContext:
    def test_context_id_is_reused_across_searches(self, shopping_agent):
        first = search(shopping_agent, "tropical beach vacation")
        assert first.session.context_id.startswith("ctx-")
        second = search(shopping_agent, "under $3000 please", first.session)
        assert second.session.context_id == first.session.context_id
        assert second.intent_mandate.natural_language_description == "tropical beach vacation | under $3000 please"
        assert second.session.stage == Stage.CARTS_OFFERED

    def test_refining_after_cart_selection_clears_selection(self, shopping_agent):
        first = search(shopping_agent, "tropical beach vacation")
        picked = asyncio.run(shopping_agent.select_cart(first.session, first.cart_mandates[0].contents.id))
        refined = search(shopping_agent, "actually somewhere in Europe", picked.session)
        assert refined.session.stage == Stage.CARTS_OFFERED
        assert refined.session.selected_cart_id is None
        assert refined.session.payment_methods == []

    def test_mismatched_context_is_rejected(self, integrity, credentials, chat_model):
        agent = ShoppingAgent(
            integrity,
            merchant=WrongContextTransport(),
            credentials=LocalTransport("credentials_agent", credentials.handle_message),
            chat_model=chat_model,
        )
        with pytest.raises(ValidationError):
            search(agent, "tropical beach vacation")

    def test_no_matches_stays_in_intent_gathering(self, shopping_agent, merchant):
        class NoMatches:
            async def match(self, description, packages):
                return []
        merchant.matcher = NoMatches()
        result = search(shopping_agent, "a moon base")
        assert result.cart_mandates == []
        assert result.session.stage == Stage.INTENT_GATHERING

    def test_chat_only_moves_to_intent_gathering(self, shopping_agent):
        result = asyncio.run(shopping_agent.chat("hi there"))
        assert result.session.stage == Stage.INTENT_GATHERING
        assert result.session.intent_mandate is None
        assert result.reply == "Looking for: hi there"

    def test_empty_message_is_rejected(self, shopping_agent):
        with pytest.raises(ValidationError):
            search(shopping_agent, "   ")


class TestIntegrityFailures:
    def test_tampered_carts_abort_the_search(self, integrity, merchant, credentials, chat_model):
        agent = ShoppingAgent(
            integrity,
            merchant=TamperingTransport(LocalTransport("merchant_agent", merchant.handle_message)),
            credentials=LocalTransport("credentials_agent", credentials.handle_message),
            chat_model=chat_model,
        )
        with pytest.raises(IntegrityError):
            search(agent, "tropical beach vacation")

    def test_untrusted_shopping_agent_is_rejected_by_merchant(self, integrity, merchant, credentials, chat_model):
        agent = ShoppingAgent(
            integrity,
            merchant=LocalTransport("merchant_agent", merchant.handle_message),
            credentials=LocalTransport("credentials_agent", credentials.handle_message),
            chat_model=chat_model,
            credential=AgentCredential("rogue_agent"),
        )
        with pytest.raises(UnauthorizedError):
            search(agent, "tropical beach vacation")


class TestSelection:
    def test_unknown_cart(self, shopping_agent):
        result = search(shopping_agent, "tropical beach vacation")
        with pytest.raises(ValidationError):
            asyncio.run(shopping_agent.select_cart(result.session, "cart-does-not-exist"))

    def test_unknown_payment_method(self, shopping_agent):
        result = search(shopping_agent, "tropical beach vacation")
        result = asyncio.run(shopping_agent.select_cart(result.session, result.cart_mandates[0].contents.id))
        with pytest.raises(ValidationError):
            asyncio.run(shopping_agent.confirm_payment(result.session, "pm-999"))

    def test_expired_cart_is_refreshed(self, shopping_agent, clock):
        result = search(shopping_agent, "tropical beach vacation")
        stale_ids = {c.contents.id for c in result.cart_mandates}
        clock.advance(3 * 3600)

        refreshed = asyncio.run(shopping_agent.select_cart(result.session, result.cart_mandates[0].contents.id))
        assert refreshed.carts_refreshed is True
        assert refreshed.session.stage == Stage.CARTS_OFFERED
        assert refreshed.cart_mandates
        assert stale_ids.isdisjoint(c.contents.id for c in refreshed.cart_mandates)
        assert refreshed.session.context_id == result.session.context_id

        picked = asyncio.run(shopping_agent.select_cart(refreshed.session, refreshed.cart_mandates[0].contents.id))
        assert picked.session.stage == Stage.PAYMENT_METHODS_OFFERED

    def test_cart_expiring_before_confirm_is_refreshed(self, shopping_agent, clock):
        result = search(shopping_agent, "tropical beach vacation")
        stale_id = result.cart_mandates[0].contents.id
        selected = asyncio.run(shopping_agent.select_cart(result.session, stale_id))
        clock.advance(16 * 60)

        refreshed = asyncio.run(shopping_agent.confirm_payment(selected.session, "pm-001"))
        assert refreshed.carts_refreshed is True
        assert refreshed.payment_mandate is None
        assert refreshed.session.stage == Stage.CARTS_OFFERED
        assert refreshed.session.selected_cart_id is None
        assert refreshed.session.selected_payment_method_id is None
        assert stale_id not in {c.contents.id for c in refreshed.cart_mandates}

        picked = asyncio.run(shopping_agent.select_cart(refreshed.session, refreshed.cart_mandates[0].contents.id))
        signed = asyncio.run(shopping_agent.confirm_payment(picked.session, "pm-001"))
        assert signed.session.stage == Stage.PAYMENT_MANDATE_SIGNED

    def test_get_payment_methods_keeps_stage(self, shopping_agent):
        result = asyncio.run(shopping_agent.get_payment_methods())
        assert result.session.stage == Stage.IDLE
        assert len(result.payment_methods) == 3


class TestTransitions:
    def test_cannot_select_cart_before_search(self, shopping_agent):
        with pytest.raises(StateTransitionError):
            asyncio.run(shopping_agent.select_cart(SessionState(), "cart-1"))

    def test_cannot_confirm_from_carts_offered(self, shopping_agent):
        result = search(shopping_agent, "tropical beach vacation")
        with pytest.raises(StateTransitionError):
            asyncio.run(shopping_agent.confirm_payment(result.session, "pm-001"))

    def test_cannot_settle_twice(self, shopping_agent):
        signed = checkout_to_signed(shopping_agent)
        settled = asyncio.run(shopping_agent.settle(signed.session))
        with pytest.raises(StateTransitionError):
            asyncio.run(shopping_agent.settle(settled.session))

    def test_cannot_retry_without_failure(self, shopping_agent):
        signed = checkout_to_signed(shopping_agent)
        with pytest.raises(StateTransitionError):
            asyncio.run(shopping_agent.retry_payment(signed.session))

    def test_cannot_search_after_settlement(self, shopping_agent):
        settled = asyncio.run(shopping_agent.settle(checkout_to_signed(shopping_agent).session))
        with pytest.raises(StateTransitionError):
            search(shopping_agent, "another trip", settled.session)

    def test_state_transition_error_is_a_validation_error(self):
        assert issubclass(StateTransitionError, ValidationError)


class TestRetry:
    @pytest.fixture
    def flaky_agent(self, integrity, merchant, credentials, chat_model):
        return ShoppingAgent(
            integrity,
            merchant=LocalTransport("merchant_agent", merchant.handle_message),
            credentials=LocalTransport("credentials_agent", credentials.handle_message),
            chat_model=chat_model,
            processor=SimulatedPaymentProcessor(integrity, decline=DeclineOnce()),
        )

    def test_decline_then_retry_with_fresh_mandate(self, flaky_agent, integrity):
        signed = checkout_to_signed(flaky_agent)
        first_mandate = signed.payment_mandate

        failed = asyncio.run(flaky_agent.settle(signed.session))
        assert failed.session.stage == Stage.PAYMENT_FAILED
        assert failed.session.last_error["error_code"] == "ap2:payment:settlement_failed"
        first_id = first_mandate.payment_mandate_contents.payment_mandate_id
        assert failed.session.failed_payment_mandate_ids == [first_id]

        retried = asyncio.run(flaky_agent.retry_payment(failed.session))
        assert retried.session.stage == Stage.PAYMENT_MANDATE_SIGNED
        assert retried.session.last_error is None
        second_mandate = retried.payment_mandate
        assert second_mandate.payment_mandate_contents.payment_mandate_id != first_id
        assert second_mandate.user_authorization != first_mandate.user_authorization
        assert (second_mandate.payment_mandate_contents.payment_details_total
                == first_mandate.payment_mandate_contents.payment_details_total)
        assert (second_mandate.payment_mandate_contents.payment_response.details
                == first_mandate.payment_mandate_contents.payment_response.details)

        settled = asyncio.run(flaky_agent.settle(retried.session))
        assert settled.session.stage == Stage.PAYMENT_SETTLED
        assert settled.receipt.payment_mandate_id == second_mandate.payment_mandate_contents.payment_mandate_id

    def test_retry_after_cart_expiry_offers_fresh_carts(self, flaky_agent, clock):
        signed = checkout_to_signed(flaky_agent)
        first_id = signed.payment_mandate.payment_mandate_contents.payment_mandate_id
        failed = asyncio.run(flaky_agent.settle(signed.session))
        assert failed.session.stage == Stage.PAYMENT_FAILED
        clock.advance(16 * 60)

        refreshed = asyncio.run(flaky_agent.retry_payment(failed.session))
        assert refreshed.carts_refreshed is True
        assert refreshed.session.stage == Stage.CARTS_OFFERED
        assert refreshed.session.payment_mandate is None
        assert refreshed.session.last_error is None
        assert refreshed.session.failed_payment_mandate_ids == [first_id]

        picked = asyncio.run(flaky_agent.select_cart(refreshed.session, refreshed.cart_mandates[0].contents.id))
        signed = asyncio.run(flaky_agent.confirm_payment(picked.session, "pm-001"))
        settled = asyncio.run(flaky_agent.settle(signed.session))
        assert settled.session.stage == Stage.PAYMENT_SETTLED

    def test_total_matches_catalog_price(self, shopping_agent):
        signed = checkout_to_signed(shopping_agent)
        total = signed.payment_mandate.payment_mandate_contents.payment_details_total
        prices = {pkg.price for pkg in VACATION_PACKAGES}
        assert total.amount.value in prices


class TestExpiryAfterSigning:
    def test_settle_after_cart_expiry_offers_fresh_carts(self, shopping_agent, processor, clock):
        signed = checkout_to_signed(shopping_agent)
        mandate_id = signed.payment_mandate.payment_mandate_contents.payment_mandate_id
        clock.advance(16 * 60)

        refreshed = asyncio.run(shopping_agent.settle(signed.session))
        assert refreshed.carts_refreshed is True
        assert refreshed.receipt is None
        assert refreshed.session.stage == Stage.CARTS_OFFERED
        assert refreshed.session.payment_mandate is None
        assert refreshed.session.selected_cart_id is None
        assert refreshed.session.failed_payment_mandate_ids == [mandate_id]
        assert processor.get_all_transactions() == []

        picked = asyncio.run(shopping_agent.select_cart(refreshed.session, refreshed.cart_mandates[0].contents.id))
        signed = asyncio.run(shopping_agent.confirm_payment(picked.session, "pm-002"))
        settled = asyncio.run(shopping_agent.settle(signed.session))
        assert settled.session.stage == Stage.PAYMENT_SETTLED
        assert settled.session.context_id == refreshed.session.context_id

    def test_search_is_allowed_after_refresh(self, shopping_agent, clock):
        signed = checkout_to_signed(shopping_agent)
        clock.advance(16 * 60)
        refreshed = asyncio.run(shopping_agent.settle(signed.session))
        result = search(shopping_agent, "somewhere with mountains", refreshed.session)
        assert result.session.stage == Stage.CARTS_OFFERED


class TestSettlementIntegrity:
    def test_tampered_mandate_aborts_the_transaction(self, shopping_agent, processor):
        signed = checkout_to_signed(shopping_agent)
        session = signed.session.model_copy(deep=True)
        session.payment_mandate.payment_mandate_contents.payment_details_total.amount.value = 1.0
        mandate_id = session.payment_mandate.payment_mandate_contents.payment_mandate_id

        aborted = asyncio.run(shopping_agent.settle(session))
        assert aborted.error["error_code"] == "ap2:mandate:integrity"
        assert aborted.receipt is None
        assert aborted.session.stage == Stage.INTENT_GATHERING
        assert aborted.session.last_error["error_code"] == "ap2:mandate:integrity"
        assert aborted.session.cart_mandates == []
        assert aborted.session.payment_mandate is None
        assert aborted.session.failed_payment_mandate_ids == [mandate_id]
        assert processor.get_all_transactions() == []

        with pytest.raises(StateTransitionError):
            asyncio.run(shopping_agent.settle(aborted.session))
        with pytest.raises(StateTransitionError):
            asyncio.run(shopping_agent.retry_payment(aborted.session))

        result = search(shopping_agent, "tropical beach vacation", aborted.session)
        assert result.session.stage == Stage.CARTS_OFFERED
