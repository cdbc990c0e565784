"""
Merchant Agent - Vacation catalog and cart signer
Turns an IntentMandate into merchant-signed CartMandates
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..ap2_types import (
    A2AMessage,
    CartContents,
    CartMandate,
    IntentMandate,
    PaymentCurrencyAmount,
    PaymentDetailsInit,
    PaymentItem,
    PaymentMethodData,
    PaymentOptions,
    PaymentRequest,
    VacationPackage,
    to_iso,
)
from ..config import CART_EXPIRY_MINUTES, MERCHANT_NAME
from ..errors import ValidationError
from ..utils import (
    CALLER_IDENTITY_KEY,
    IdentityVerifier,
    MandateIntegrityService,
    default_verifier,
    extract_mandate_from_message,
    find_data,
    get_logger,
    log_mandate_event,
    new_envelope,
)
from .catalog import VACATION_PACKAGES, MAX_MATCHES, OllamaPackageMatcher, PackageMatcher, get_package

logger = get_logger("MerchantAgent")

CART_MANDATES_KEY = "cart_mandates"

# Merchant pricing policy: how a catalog price is broken into display items
PACKAGE_SHARE = 0.85
INSURANCE_SHARE = 0.05
SERVICE_FEE_SHARE = 0.10
REFUND_PERIOD_DAYS = 30
CARD_METHOD = "https://www.example.com/card"
SUPPORTED_NETWORKS = ["visa", "mastercard", "amex"]


def _unique_suffix() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class MerchantAgent:
    """
    Vacation merchant agent.

    Responsibilities:
    1. Accept IntentMandates only from the trusted Shopping Agent
    2. Ask the package matcher for up to three catalog matches
    3. Build one CartContents per match and sign it
    4. Reply with the CartMandates in an envelope on the same context

    Stateless across invocations.
    """

    def __init__(
        self,
        integrity: MandateIntegrityService,
        verifier: Optional[IdentityVerifier] = None,
        matcher: Optional[PackageMatcher] = None,
        catalog: Optional[List[VacationPackage]] = None,
        merchant_name: str = MERCHANT_NAME,
        cart_expiry: timedelta = timedelta(minutes=CART_EXPIRY_MINUTES),
    ):
        self.integrity = integrity
        self.verifier = verifier or default_verifier()
        self.matcher = matcher or OllamaPackageMatcher()
        self.catalog = catalog if catalog is not None else VACATION_PACKAGES
        self.merchant_name = merchant_name
        self.cart_expiry = cart_expiry

    async def handle_message(self, message: A2AMessage) -> A2AMessage:
        """
        Process an IntentMandate envelope and answer with signed carts.

        Raises UnauthorizedError for an untrusted caller, ValidationError for a
        missing or malformed IntentMandate, ExpiredError for a stale intent.
        """
        caller = self.verifier.verify(find_data(message, CALLER_IDENTITY_KEY))

        raw_intent = extract_mandate_from_message(message, "IntentMandate")
        if raw_intent is None:
            raise ValidationError("No IntentMandate found in message")
        try:
            intent = IntentMandate.model_validate(raw_intent)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid IntentMandate",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

        self.integrity.check_not_expired(intent.intent_expiry, "IntentMandate")
        logger.info(
            f"Processing IntentMandate from {caller.agent_id}",
            extra={"context_id": message.context_id, "description": intent.natural_language_description[:120]},
        )

        packages = await self.find_matching_packages(intent)
        cart_mandates = [self.create_cart_mandate(package) for package in packages]

        logger.info(f"Generated {len(cart_mandates)} cart mandates", extra={"context_id": message.context_id})

        return (
            new_envelope()
            .with_context(message.context_id)
            .with_task(message.task_id)
            .with_text(f"Found {len(cart_mandates)} vacation packages matching your request.")
            .with_data(CART_MANDATES_KEY, [cart.model_dump(mode="json", exclude_none=True) for cart in cart_mandates])
            .build()
        )

    async def find_matching_packages(self, intent: IntentMandate) -> List[VacationPackage]:
        if intent.merchants and self.merchant_name not in intent.merchants:
            logger.info("Intent is restricted to other merchants")
            return []

        catalog = self.catalog
        if intent.skus:
            catalog = [pkg for pkg in catalog if pkg.id in intent.skus]

        package_ids = await self.matcher.match(intent.natural_language_description, catalog)

        packages = []
        for package_id in package_ids:
            package = get_package(package_id, catalog)
            if package is None:
                logger.warning(f"Matcher returned unknown package id: {package_id}")
                continue
            if package not in packages:
                packages.append(package)
        return packages[:MAX_MATCHES]

    def create_cart_mandate(self, package: VacationPackage) -> CartMandate:
        """Build and sign the cart for one catalog package."""
        currency = package.currency

        def item(label: str, share: float, refund_period: Optional[int] = None) -> PaymentItem:
            return PaymentItem(
                label=label,
                amount=PaymentCurrencyAmount(currency=currency, value=round(package.price * share, 2)),
                refund_period=refund_period,
            )

        contents = CartContents(
            id=f"cart-{_unique_suffix()}",
            user_cart_confirmation_required=True,
            merchant_name=self.merchant_name,
            cart_expiry=to_iso(datetime.fromtimestamp(self.integrity.now(), tz=timezone.utc) + self.cart_expiry),
            image_url=package.image_url,
            payment_request=PaymentRequest(
                method_data=[
                    PaymentMethodData(
                        supported_methods=CARD_METHOD,
                        data={"supported_networks": SUPPORTED_NETWORKS},
                    )
                ],
                details=PaymentDetailsInit(
                    id=f"payment-{_unique_suffix()}",
                    display_items=[
                        item(package.name, PACKAGE_SHARE, REFUND_PERIOD_DAYS),
                        item("Travel Insurance", INSURANCE_SHARE),
                        item("Service Fee", SERVICE_FEE_SHARE),
                    ],
                    total=PaymentItem(
                        label="Total Amount",
                        amount=PaymentCurrencyAmount(currency=currency, value=package.price),
                        refund_period=REFUND_PERIOD_DAYS,
                    ),
                ),
                options=PaymentOptions(
                    request_payer_email=True,
                    request_payer_name=True,
                    request_shipping=False,
                ),
            ),
        )

        cart = CartMandate(contents=contents, merchant_authorization=self.integrity.sign_cart(contents))
        log_mandate_event(
            logger, "SIGNED", "CartMandate", contents.id,
            details={"package_id": package.id, "total": package.price, "currency": currency},
        )
        return cart
