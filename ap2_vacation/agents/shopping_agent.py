"""
Shopping Agent - User-facing vacation shopping orchestrator
Drives one AP2 transaction from free-form intent to a signed, settled PaymentMandate
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from ..ap2_types import (
    A2AMessage,
    CartMandate,
    ConversationTurn,
    IntentMandate,
    PaymentMandate,
    PaymentMandateContents,
    PaymentMethod,
    PaymentReceipt,
    PaymentResponse,
    SessionState,
    TransactionStage,
    to_iso,
    utc_now,
)
from ..config import (
    A2A_REMOTE_PEERS,
    A2A_TIMEOUT,
    CREDENTIALS_AGENT_ID,
    CREDENTIALS_AGENT_URL,
    DEMO_PAYER_EMAIL,
    DEMO_PAYER_NAME,
    INTENT_EXPIRY_HOURS,
    MERCHANT_AGENT_ID,
    MERCHANT_AGENT_URL,
    SHOPPING_AGENT_ID,
)
from ..errors import ExpiredError, IntegrityError, SettlementError, StateTransitionError, ValidationError
from ..utils import (
    CALLER_IDENTITY_KEY,
    A2AClient,
    AgentCredential,
    AgentTransport,
    LocalTransport,
    MandateIntegrityService,
    build_signer_from_config,
    default_shopping_credential,
    find_data,
    get_logger,
    log_mandate_event,
    log_transition,
    new_envelope,
)
from .conversation import VacationChatModel
from .credentials_agent import PAYMENT_METHODS_KEY, PAYMENT_STATUS_KEY, CredentialsAgent
from .merchant_agent import CART_MANDATES_KEY, MerchantAgent
from .payment_agent import PaymentProcessor, SimulatedPaymentProcessor

logger = get_logger("ShoppingAgent")

Stage = TransactionStage
ModelT = TypeVar("ModelT", bound=BaseModel)

# Stages each operation may be invoked from
ALLOWED_STAGES = {
    "chat": set(Stage),
    "get_payment_methods": set(Stage),
    "search_vacations": {Stage.IDLE, Stage.INTENT_GATHERING, Stage.CARTS_OFFERED, Stage.PAYMENT_METHODS_OFFERED},
    "select_cart": {Stage.CARTS_OFFERED, Stage.PAYMENT_METHODS_OFFERED},
    "confirm_payment": {Stage.PAYMENT_METHODS_OFFERED},
    "settle": {Stage.PAYMENT_MANDATE_SIGNED},
    "retry_payment": {Stage.PAYMENT_FAILED},
}


def new_context_id() -> str:
    return f"ctx-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def new_payment_mandate_id() -> str:
    return f"pm-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class ShoppingResult(BaseModel):
    """Outcome of one orchestrator call. ``session`` is always the updated state."""

    session: SessionState
    reply: Optional[str] = None
    intent_mandate: Optional[IntentMandate] = None
    cart_mandates: List[CartMandate] = Field(default_factory=list)
    carts_refreshed: bool = False
    payment_methods: List[PaymentMethod] = Field(default_factory=list)
    payment_mandate: Optional[PaymentMandate] = None
    payment_status: Optional[str] = None
    receipt: Optional[PaymentReceipt] = None
    error: Optional[Dict[str, Any]] = None


class ShoppingAgent:
    """
    User-facing orchestrator for vacation shopping and AP2 checkout.

    Transaction Flow:
    1. IDLE -> INTENT_GATHERING - first user message
    2. CARTS_OFFERED - Merchant returned signed carts for the IntentMandate
    3. PAYMENT_METHODS_OFFERED - a cart was selected, wallet listed
    4. PAYMENT_MANDATE_SIGNED - user signed a PaymentMandate for cart + method
    5. PAYMENT_SETTLED / PAYMENT_FAILED - settlement outcome

    The agent keeps no per-session state: every operation takes the caller's
    SessionState and returns an updated copy inside a ShoppingResult.
    """

    def __init__(
        self,
        integrity: MandateIntegrityService,
        merchant: AgentTransport,
        credentials: AgentTransport,
        chat_model: Optional[VacationChatModel] = None,
        processor: Optional[PaymentProcessor] = None,
        credential: Optional[AgentCredential] = None,
        intent_expiry: timedelta = timedelta(hours=INTENT_EXPIRY_HOURS),
    ):
        self.agent_id = SHOPPING_AGENT_ID
        self.integrity = integrity
        self.merchant = merchant
        self.credentials = credentials
        self.chat_model = chat_model or VacationChatModel()
        self.processor = processor or SimulatedPaymentProcessor(integrity)
        self.credential = credential or default_shopping_credential()
        self.intent_expiry = intent_expiry

    # ═══════════════════════════════════════════════════════════════
    # Conversation & intent
    # ═══════════════════════════════════════════════════════════════

    async def chat(self, message: str, session: Optional[SessionState] = None) -> ShoppingResult:
        """Conversational turn only; no mandates are created."""
        session = self._begin(session, "chat")
        reply = await self._converse(session, message)
        if session.stage == Stage.IDLE:
            self._advance(session, Stage.INTENT_GATHERING, "chat")
        return ShoppingResult(session=session, reply=reply)

    async def search_vacations(self, message: str, session: Optional[SessionState] = None) -> ShoppingResult:
        """
        Turn the conversation so far into an IntentMandate and collect signed carts.

        Can be repeated to refine the search; the session's context_id is kept
        and any previous cart or payment selection is cleared.
        """
        session = self._begin(session, "search_vacations")
        reply = await self._converse(session, message)
        if session.stage == Stage.IDLE:
            self._advance(session, Stage.INTENT_GATHERING, "search_vacations")

        intent = self.build_intent_mandate(session)
        log_mandate_event(logger, "CREATED", "IntentMandate", session.context_id,
                          details={"description": intent.natural_language_description[:120]})

        carts = await self._request_carts(session, intent)
        session.intent_mandate = intent
        self._offer_carts(session, carts, "search_vacations")

        return ShoppingResult(session=session, reply=reply, intent_mandate=intent, cart_mandates=carts)

    def build_intent_mandate(self, session: SessionState) -> IntentMandate:
        """Intent from every human turn so far, joined with ' | '."""
        description = " | ".join(session.human_turns())
        if not description:
            raise ValidationError("Cannot build an IntentMandate without a user message")
        return IntentMandate(
            natural_language_description=description,
            user_cart_confirmation_required=True,
            requires_refundability=True,
            intent_expiry=to_iso(self._now() + self.intent_expiry),
        )

    # ═══════════════════════════════════════════════════════════════
    # Cart & payment method selection
    # ═══════════════════════════════════════════════════════════════

    async def select_cart(self, session: SessionState, cart_id: str) -> ShoppingResult:
        """
        Select one offered cart and fetch the user's payment methods.

        An expired cart is not selectable: fresh carts are requested for the
        stored intent and returned with ``carts_refreshed`` set.
        """
        session = self._begin(session, "select_cart")
        cart = session.find_cart(cart_id)
        if cart is None:
            raise ValidationError("Unknown cart", details={"cart_id": cart_id})

        try:
            self.integrity.verify_cart_mandate(cart)
        except ExpiredError as e:
            return await self._refresh_carts(session, cart_id, e)

        methods = await self._request_payment_methods(session)
        session.selected_cart_id = cart_id
        session.payment_methods = methods
        session.selected_payment_method_id = None
        session.payment_mandate = None
        self._advance(session, Stage.PAYMENT_METHODS_OFFERED, "select_cart")

        return ShoppingResult(
            session=session,
            reply=f"You selected {cart.contents.payment_request.details.display_items[0].label}. "
                  "Please choose a payment method.",
            payment_methods=methods,
        )

    async def get_payment_methods(self, session: Optional[SessionState] = None) -> ShoppingResult:
        """List the wallet without changing the stage."""
        session = self._begin(session, "get_payment_methods")
        methods = await self._request_payment_methods(session)
        session.payment_methods = methods
        return ShoppingResult(session=session, payment_methods=methods)

    # ═══════════════════════════════════════════════════════════════
    # Payment mandate & settlement
    # ═══════════════════════════════════════════════════════════════

    async def confirm_payment(self, session: SessionState, payment_method_id: str) -> ShoppingResult:
        """Sign a PaymentMandate binding the selected cart to the chosen method."""
        session = self._begin(session, "confirm_payment")
        method = session.find_payment_method(payment_method_id)
        if method is None:
            raise ValidationError("Unknown payment method", details={"payment_method_id": payment_method_id})

        session.selected_payment_method_id = method.id
        return await self._sign_and_submit(session, method, "confirm_payment")

    async def retry_payment(self, session: SessionState) -> ShoppingResult:
        """After a failed settlement, sign a brand new mandate for the same cart and method."""
        session = self._begin(session, "retry_payment")
        method = session.find_payment_method(session.selected_payment_method_id or "")
        if method is None:
            raise ValidationError("Session has no selected payment method to retry with")
        return await self._sign_and_submit(session, method, "retry_payment")

    async def settle(self, session: SessionState) -> ShoppingResult:
        """
        Hand the signed mandate and signed cart to the payment processor.

        A decline or an expired payment token is not raised: the session moves
        to PAYMENT_FAILED with ``last_error`` set so the user can retry. An
        expired cart retires the mandate and offers fresh carts instead, and an
        integrity failure aborts the transaction.
        """
        session = self._begin(session, "settle")
        cart = self._selected_cart(session)
        mandate = session.payment_mandate
        if mandate is None:
            raise ValidationError("Session has no PaymentMandate to settle")

        try:
            self.integrity.verify_cart_mandate(cart)
        except ExpiredError as e:
            return await self._refresh_carts(session, cart.contents.id, e)
        except IntegrityError as e:
            return self._abort(session, e, "settle")

        mandate_id = mandate.payment_mandate_contents.payment_mandate_id
        try:
            receipt = await self.processor.settle(mandate, cart)
        except IntegrityError as e:
            return self._abort(session, e, "settle")
        except (SettlementError, ExpiredError) as e:
            logger.warning(f"Settlement failed for {mandate_id}: {e.message}", extra={"context_id": session.context_id})
            self._retire_mandate(session)
            session.last_error = e.to_dict()
            self._advance(session, Stage.PAYMENT_FAILED, "settle")
            if isinstance(e, ExpiredError):
                reply = "Your payment authorization expired. You can retry with a freshly signed authorization."
            else:
                reply = "Your payment was declined. You can retry with a freshly signed authorization."
            return ShoppingResult(session=session, reply=reply, error=e.to_dict())

        session.receipt = receipt
        session.last_error = None
        self._advance(session, Stage.PAYMENT_SETTLED, "settle")
        return ShoppingResult(
            session=session,
            reply=f"Payment complete. Transaction {receipt.transaction_id} is confirmed.",
            receipt=receipt,
        )

    def create_payment_mandate(self, cart: CartMandate, method: PaymentMethod) -> PaymentMandate:
        """
        Build and sign a PaymentMandate for ``cart`` paid with ``method``.

        Details id and total are copied from the signed cart verbatim, and the
        cart digest is chained into the user's token.
        """
        details = cart.contents.payment_request.details
        contents = PaymentMandateContents(
            payment_mandate_id=new_payment_mandate_id(),
            payment_details_id=details.id,
            payment_details_total=details.total.model_copy(deep=True),
            payment_response=PaymentResponse(
                request_id=details.id,
                method_name=method.type,
                details={"payment_method_id": method.id},
                payer_name=DEMO_PAYER_NAME,
                payer_email=DEMO_PAYER_EMAIL,
            ),
            merchant_agent=cart.contents.merchant_name,
            timestamp=to_iso(utc_now()),
        )
        token = self.integrity.sign_payment(contents, cart_hash=self.integrity.digest(cart.contents))
        log_mandate_event(logger, "SIGNED", "PaymentMandate", contents.payment_mandate_id,
                          details={"cart_id": cart.contents.id, "payment_method_id": method.id})
        return PaymentMandate(payment_mandate_contents=contents, user_authorization=token)

    async def close(self):
        """Cleanup resources."""
        await self.merchant.close()
        await self.credentials.close()

    # ═══════════════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════════════

    def _begin(self, session: Optional[SessionState], operation: str) -> SessionState:
        session = SessionState() if session is None else session.model_copy(deep=True)
        if session.stage not in ALLOWED_STAGES[operation]:
            raise StateTransitionError(
                f"Cannot {operation} while the session is {session.stage.value}",
                details={"operation": operation, "stage": session.stage.value},
            )
        if session.context_id is None:
            session.context_id = new_context_id()
        return session

    def _advance(self, session: SessionState, to_stage: TransactionStage, trigger: str):
        if session.stage != to_stage:
            log_transition(logger, session.context_id, session.stage.value, to_stage.value, trigger)
            session.stage = to_stage

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.integrity.now(), tz=timezone.utc)

    async def _converse(self, session: SessionState, message: str) -> str:
        if not message or not message.strip():
            raise ValidationError("Message is required")
        if not session.history:
            session.history = self.chat_model.start_history()
        session.history.append(ConversationTurn(type="human", content=message.strip()))
        reply = await self.chat_model.reply(session.history)
        session.history.append(ConversationTurn(type="ai", content=reply))
        return reply

    def _offer_carts(self, session: SessionState, carts: List[CartMandate], trigger: str):
        session.cart_mandates = carts
        session.selected_cart_id = None
        session.payment_methods = []
        session.selected_payment_method_id = None
        session.payment_mandate = None
        self._advance(session, Stage.CARTS_OFFERED if carts else Stage.INTENT_GATHERING, trigger)

    def _selected_cart(self, session: SessionState) -> CartMandate:
        cart = session.find_cart(session.selected_cart_id or "")
        if cart is None:
            raise ValidationError("Session has no selected cart")
        return cart

    def _retire_mandate(self, session: SessionState):
        mandate = session.payment_mandate
        if mandate is None:
            return
        mandate_id = mandate.payment_mandate_contents.payment_mandate_id
        if mandate_id not in session.failed_payment_mandate_ids:
            session.failed_payment_mandate_ids.append(mandate_id)

    async def _refresh_carts(self, session: SessionState, cart_id: str, cause: ExpiredError) -> ShoppingResult:
        """Replace an expired cart (and any mandate signed for it) with fresh offers for the stored intent."""
        logger.info(f"Cart {cart_id} expired, requesting fresh carts", extra={"context_id": session.context_id})
        if session.intent_mandate is None:
            raise ValidationError("Session has no IntentMandate to refresh carts for") from cause
        self._retire_mandate(session)
        carts = await self._request_carts(session, session.intent_mandate)
        session.last_error = None
        self._offer_carts(session, carts, "cart_expired")
        return ShoppingResult(
            session=session,
            reply="That offer has expired. Here are refreshed packages for your trip.",
            cart_mandates=carts,
            carts_refreshed=True,
        )

    def _abort(self, session: SessionState, error: IntegrityError, trigger: str) -> ShoppingResult:
        """Drop every cart and mandate after an integrity failure; the user has to search again."""
        logger.warning(f"Transaction aborted: {error.message}", extra={"context_id": session.context_id})
        self._retire_mandate(session)
        session.last_error = error.to_dict()
        self._offer_carts(session, [], trigger)
        return ShoppingResult(
            session=session,
            reply="We could not verify this booking, so it was cancelled. Please search again.",
            error=error.to_dict(),
        )

    async def _sign_and_submit(self, session: SessionState, method: PaymentMethod, trigger: str) -> ShoppingResult:
        cart = self._selected_cart(session)
        try:
            self.integrity.verify_cart_mandate(cart)
        except ExpiredError as e:
            return await self._refresh_carts(session, cart.contents.id, e)
        except IntegrityError as e:
            return self._abort(session, e, trigger)

        mandate = self.create_payment_mandate(cart, method)
        status = await self._submit_payment_mandate(session, mandate)

        session.payment_mandate = mandate
        session.last_error = None
        self._advance(session, Stage.PAYMENT_MANDATE_SIGNED, trigger)
        return ShoppingResult(
            session=session,
            reply="Payment authorization signed. Ready to complete your booking.",
            payment_mandate=mandate,
            payment_status=status,
        )

    async def _request_carts(self, session: SessionState, intent: IntentMandate) -> List[CartMandate]:
        message = (
            self._envelope(session)
            .with_text("Find vacation packages matching user's intent")
            .with_data("ap2.mandates.IntentMandate", intent.model_dump(mode="json", exclude_none=True))
            .with_data(CALLER_IDENTITY_KEY, self.credential.agent_id)
            .build()
        )
        reply = await self._exchange(self.merchant, session, message)

        carts = []
        for raw in find_data(reply, CART_MANDATES_KEY) or []:
            cart = _parse(CartMandate, raw, "CartMandate")
            self.integrity.verify_cart_mandate(cart)
            log_mandate_event(logger, "VERIFIED", "CartMandate", cart.contents.id)
            carts.append(cart)

        logger.info(f"Merchant offered {len(carts)} carts", extra={"context_id": session.context_id})
        return carts

    async def _request_payment_methods(self, session: SessionState) -> List[PaymentMethod]:
        message = (
            self._envelope(session)
            .with_text("Get available payment methods for user")
            .with_data("action", "get_payment_methods")
            .with_data(CALLER_IDENTITY_KEY, self.credential.agent_id)
            .build()
        )
        reply = await self._exchange(self.credentials, session, message)
        return [_parse(PaymentMethod, raw, "PaymentMethod") for raw in find_data(reply, PAYMENT_METHODS_KEY) or []]

    async def _submit_payment_mandate(self, session: SessionState, mandate: PaymentMandate) -> str:
        message = (
            self._envelope(session)
            .with_text("Payment mandate signed by user")
            .with_data("action", "initiate_payment")
            .with_data("ap2.mandates.PaymentMandate", mandate.model_dump(mode="json", exclude_none=True))
            .with_data(CALLER_IDENTITY_KEY, self.credential.agent_id)
            .build()
        )
        reply = await self._exchange(self.credentials, session, message)
        status = find_data(reply, PAYMENT_STATUS_KEY)
        if status != "ready":
            raise ValidationError(
                "Credentials provider did not accept the PaymentMandate",
                details={"payment_status": status},
            )
        return status

    def _envelope(self, session: SessionState):
        return new_envelope().with_context(session.context_id)

    async def _exchange(self, peer: AgentTransport, session: SessionState, message: A2AMessage) -> A2AMessage:
        reply = await peer.send(message)
        if reply.context_id != session.context_id:
            raise ValidationError(
                f"{peer.peer_name} replied on a different context",
                details={"expected": session.context_id, "actual": reply.context_id},
            )
        return reply


def _parse(model: Type[ModelT], raw: Any, what: str) -> ModelT:
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Malformed {what} in peer response",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


def create_shopping_agent(
    remote: bool = A2A_REMOTE_PEERS,
    integrity: Optional[MandateIntegrityService] = None,
) -> ShoppingAgent:
    """
    Wire a ShoppingAgent to its peers.

    Remote peers are reached over A2A JSON-RPC at the configured URLs; otherwise
    the Merchant and Credentials agents run in-process behind LocalTransport.
    """
    integrity = integrity or MandateIntegrityService(build_signer_from_config())
    if remote:
        merchant = A2AClient(
            SHOPPING_AGENT_ID, MERCHANT_AGENT_ID, f"{MERCHANT_AGENT_URL}/a2a/{MERCHANT_AGENT_ID}",
            timeout=A2A_TIMEOUT, logger=logger,
        )
        credentials = A2AClient(
            SHOPPING_AGENT_ID, CREDENTIALS_AGENT_ID, f"{CREDENTIALS_AGENT_URL}/a2a/{CREDENTIALS_AGENT_ID}",
            timeout=A2A_TIMEOUT, logger=logger,
        )
    else:
        merchant = LocalTransport(MERCHANT_AGENT_ID, MerchantAgent(integrity).handle_message, logger=logger)
        credentials = LocalTransport(
            CREDENTIALS_AGENT_ID, CredentialsAgent(integrity=integrity).handle_message, logger=logger,
        )
    return ShoppingAgent(integrity, merchant, credentials)
