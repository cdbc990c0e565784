"""
Payment Agent - Payment processor and settlement
Charges the signed cart total once the PaymentMandate chain checks out
"""

import asyncio
from typing import Callable, Dict, List, Optional, Union

from ..ap2_types import CartMandate, PaymentMandate, PaymentReceipt
from ..errors import SettlementError
from ..utils import (
    MandateIntegrityService,
    generate_authorization_code,
    generate_transaction_id,
    get_logger,
    log_mandate_event,
    log_payment_event,
)

logger = get_logger("PaymentAgent")

DeclineRule = Union[bool, Callable[[PaymentMandate], bool]]


class PaymentProcessor:
    """Settlement port: moves funds for a signed mandate or raises SettlementError."""

    async def settle(self, payment_mandate: PaymentMandate, cart_mandate: CartMandate) -> PaymentReceipt:
        raise NotImplementedError


class SimulatedPaymentProcessor(PaymentProcessor):
    """
    Payment processor and settlement for AP2 transactions.

    Responsibilities:
    1. Verify the merchant's cart signature and the user's payment signature
    2. Check the mandate references the cart, carries its total and chains its digest
    3. Simulate payment network authorization
    4. Return a receipt charging exactly the signed cart total

    ``decline`` forces a network decline, either always (True) or per mandate
    through a predicate, so the retry path can be exercised.
    """

    def __init__(
        self,
        integrity: MandateIntegrityService,
        decline: DeclineRule = False,
        latency_seconds: float = 0.0,
    ):
        self.integrity = integrity
        self.decline = decline
        self.latency_seconds = latency_seconds
        self.transactions: Dict[str, PaymentReceipt] = {}

    async def settle(self, payment_mandate: PaymentMandate, cart_mandate: CartMandate) -> PaymentReceipt:
        contents = payment_mandate.payment_mandate_contents
        mandate_id = contents.payment_mandate_id
        log_mandate_event(logger, "RECEIVED", "PaymentMandate", mandate_id)

        # Step 1: Validate the mandate chain
        self.integrity.verify_cart_mandate(cart_mandate)
        log_mandate_event(logger, "VERIFIED", "CartMandate", cart_mandate.contents.id)
        self.integrity.verify_payment_mandate(payment_mandate, cart=cart_mandate)
        log_mandate_event(logger, "VERIFIED", "PaymentMandate", mandate_id)

        # Step 2: Simulate payment network authorization
        total = cart_mandate.contents.total
        transaction_id = generate_transaction_id()
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        if self._declines(payment_mandate):
            log_payment_event(
                logger, "DECLINED", transaction_id, total.amount.value, total.amount.currency,
                details={"payment_mandate_id": mandate_id},
            )
            raise SettlementError(
                "Payment was declined by the network",
                details={"payment_mandate_id": mandate_id, "transaction_id": transaction_id},
            )

        # Step 3: Create payment receipt
        receipt = PaymentReceipt(
            transaction_id=transaction_id,
            authorization_code=generate_authorization_code(),
            payment_mandate_id=mandate_id,
            cart_id=cart_mandate.contents.id,
            total_charged=total,
        )
        self.transactions[transaction_id] = receipt

        log_payment_event(
            logger, "AUTHORIZED", transaction_id, total.amount.value, total.amount.currency,
            details={"auth_code": receipt.authorization_code, "payment_mandate_id": mandate_id},
        )
        return receipt

    def _declines(self, payment_mandate: PaymentMandate) -> bool:
        if callable(self.decline):
            return bool(self.decline(payment_mandate))
        return bool(self.decline)

    def get_transaction(self, transaction_id: str) -> Optional[PaymentReceipt]:
        return self.transactions.get(transaction_id)

    def get_all_transactions(self) -> List[PaymentReceipt]:
        return list(self.transactions.values())


class DeclineOnce:
    """Decline rule that fails the first mandate it sees and approves the rest."""

    def __init__(self):
        self.declined: List[str] = []

    def __call__(self, payment_mandate: PaymentMandate) -> bool:
        if self.declined:
            return False
        self.declined.append(payment_mandate.payment_mandate_contents.payment_mandate_id)
        return True
