"""
Credentials Agent - Payment credential provider
Simulates a payment vault (like Google Pay) holding the user's payment methods
"""

from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..ap2_types import A2AMessage, PaymentMandate, PaymentMethod
from ..errors import ValidationError
from ..utils import (
    CALLER_IDENTITY_KEY,
    IdentityVerifier,
    MandateIntegrityService,
    all_text,
    default_verifier,
    extract_mandate_from_message,
    find_data,
    get_logger,
    log_mandate_event,
    new_envelope,
)

logger = get_logger("CredentialsAgent")

ACTION_KEY = "action"
PAYMENT_METHODS_KEY = "payment_methods"
PAYMENT_STATUS_KEY = "payment_status"

# Mock saved payment methods (simulated wallet)
DEFAULT_PAYMENT_METHODS: List[PaymentMethod] = [
    PaymentMethod(id="pm-001", alias="Primary Visa", type="card", last4="4242", brand="Visa"),
    PaymentMethod(id="pm-002", alias="Mastercard Rewards", type="card", last4="5555", brand="Mastercard"),
    PaymentMethod(id="pm-003", alias="Digital Wallet", type="wallet"),
]


class CredentialsAgent:
    """
    Payment credential provider.

    Responsibilities:
    1. List the user's payment methods (tokenized references, never card data)
    2. Receive the signed PaymentMandate ahead of settlement
    3. Check the user's authorization over it when holding a verifier

    Read-only: nothing here is mutated by a request.
    """

    def __init__(
        self,
        verifier: Optional[IdentityVerifier] = None,
        integrity: Optional[MandateIntegrityService] = None,
        payment_methods: Optional[List[PaymentMethod]] = None,
    ):
        self.verifier = verifier or default_verifier()
        self.integrity = integrity
        self.payment_methods = tuple(payment_methods if payment_methods is not None else DEFAULT_PAYMENT_METHODS)

    def get_payment_methods(self) -> List[PaymentMethod]:
        return list(self.payment_methods)

    async def handle_message(self, message: A2AMessage) -> A2AMessage:
        """
        Dispatch on the ``action`` data part.

        ``get_payment_methods`` (or free text asking for payment methods)
        returns the wallet; ``initiate_payment`` acknowledges a PaymentMandate.
        """
        caller = self.verifier.verify(find_data(message, CALLER_IDENTITY_KEY))
        action = find_data(message, ACTION_KEY)
        logger.info(f"Credentials request from {caller.agent_id}: {action}", extra={"context_id": message.context_id})

        reply = new_envelope().with_context(message.context_id).with_task(message.task_id)

        if action == "get_payment_methods" or (action is None and "payment method" in all_text(message).lower()):
            methods = self.get_payment_methods()
            logger.info(f"Returning {len(methods)} payment methods")
            return (
                reply.with_text(f"Found {len(methods)} available payment methods.")
                .with_data(PAYMENT_METHODS_KEY, [m.model_dump(mode="json", exclude_none=True) for m in methods])
                .build()
            )

        if action == "initiate_payment":
            mandate = self._read_payment_mandate(message)
            if self.integrity is not None:
                self.integrity.verify_payment_mandate(mandate)
            log_mandate_event(
                logger, "RECEIVED", "PaymentMandate",
                mandate.payment_mandate_contents.payment_mandate_id,
                details={"verified": self.integrity is not None},
            )
            return (
                reply.with_text("Payment mandate received and verified.")
                .with_data(PAYMENT_STATUS_KEY, "ready")
                .build()
            )

        logger.warning(f"Unknown credentials action: {action}")
        return reply.with_text("Unknown action requested.").build()

    @staticmethod
    def _read_payment_mandate(message: A2AMessage) -> PaymentMandate:
        raw = extract_mandate_from_message(message, "PaymentMandate")
        if raw is None:
            raise ValidationError("No PaymentMandate found in message")
        try:
            return PaymentMandate.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid PaymentMandate",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e
