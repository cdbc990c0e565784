"""
AP2 (Agent Payments Protocol) Data Models
Intent, Cart and Payment mandates plus the A2A envelope they travel in
"""

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from datetime import datetime, timezone
from enum import Enum

from .errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MandateType(str, Enum):
    INTENT = "IntentMandate"
    CART = "CartMandate"
    PAYMENT = "PaymentMandate"


# ═══════════════════════════════════════════════════════════════
# W3C PAYMENT REQUEST TYPES
# ═══════════════════════════════════════════════════════════════

class PaymentCurrencyAmount(BaseModel):
    currency: str  # ISO 4217
    value: float


class PaymentItem(BaseModel):
    label: str
    amount: PaymentCurrencyAmount
    pending: Optional[bool] = None
    refund_period: Optional[int] = None  # days


class PaymentShippingOption(BaseModel):
    id: str
    label: str
    amount: PaymentCurrencyAmount
    selected: Optional[bool] = None


class PaymentMethodData(BaseModel):
    supported_methods: str
    data: Optional[Dict[str, Any]] = None


class ContactAddress(BaseModel):
    country: Optional[str] = None
    address_line: Optional[List[str]] = None
    region: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    organization: Optional[str] = None
    recipient: Optional[str] = None
    phone: Optional[str] = None


class PaymentOptions(BaseModel):
    request_payer_name: Optional[bool] = None
    request_payer_email: Optional[bool] = None
    request_payer_phone: Optional[bool] = None
    request_shipping: Optional[bool] = None
    shipping_type: Optional[Literal["shipping", "delivery", "pickup"]] = None


class PaymentDetailsInit(BaseModel):
    id: str
    display_items: List[PaymentItem]
    shipping_options: Optional[List[PaymentShippingOption]] = None
    total: PaymentItem


class PaymentRequest(BaseModel):
    method_data: List[PaymentMethodData]
    details: PaymentDetailsInit
    options: Optional[PaymentOptions] = None
    shipping_address: Optional[ContactAddress] = None


class PaymentResponse(BaseModel):
    request_id: str
    method_name: str
    details: Optional[Dict[str, Any]] = None
    shipping_address: Optional[ContactAddress] = None
    shipping_option: Optional[PaymentShippingOption] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    payer_phone: Optional[str] = None


# ═══════════════════════════════════════════════════════════════
# INTENT MANDATE - What the user asked the agent to shop for
# ═══════════════════════════════════════════════════════════════

class IntentMandate(BaseModel):
    natural_language_description: str
    user_cart_confirmation_required: bool = True
    merchants: Optional[List[str]] = None
    skus: Optional[List[str]] = None
    requires_refundability: bool = False
    intent_expiry: str


# ═══════════════════════════════════════════════════════════════
# CART MANDATE - Merchant-signed cart, guaranteed for a limited time
# ═══════════════════════════════════════════════════════════════

class CartContents(BaseModel):
    id: str
    user_cart_confirmation_required: bool = True
    payment_request: PaymentRequest
    cart_expiry: str
    merchant_name: str
    image_url: Optional[str] = None

    @property
    def total(self) -> PaymentItem:
        return self.payment_request.details.total


class CartMandate(BaseModel):
    contents: CartContents
    merchant_authorization: Optional[str] = None  # compact JWS


# ═══════════════════════════════════════════════════════════════
# PAYMENT MANDATE - User's authorization to pay for one cart
# ═══════════════════════════════════════════════════════════════

class PaymentMandateContents(BaseModel):
    payment_mandate_id: str
    payment_details_id: str
    payment_details_total: PaymentItem
    payment_response: PaymentResponse
    merchant_agent: str
    timestamp: str


class PaymentMandate(BaseModel):
    payment_mandate_contents: PaymentMandateContents
    user_authorization: Optional[str] = None  # compact JWS


# ═══════════════════════════════════════════════════════════════
# SIGNED TOKEN CLAIMS
# ═══════════════════════════════════════════════════════════════

class CartMandateClaims(BaseModel):
    iss: str
    sub: str
    aud: str
    cart_id: str
    cart_hash: str
    iat: int
    exp: int
    jti: str


class PaymentMandateClaims(BaseModel):
    iss: str
    sub: str
    aud: str
    payment_mandate_id: str
    mandate_hash: str
    transaction_data: List[str] = Field(default_factory=list)
    iat: int
    exp: int
    jti: str


# ═══════════════════════════════════════════════════════════════
# WALLET & CATALOG
# ═══════════════════════════════════════════════════════════════

class PaymentMethod(BaseModel):
    id: str
    alias: str
    type: Literal["card", "bank", "wallet"]
    last4: Optional[str] = None
    brand: Optional[str] = None


class VacationPackage(BaseModel):
    id: str
    name: str
    destination: str
    region: str
    activities: List[str] = Field(default_factory=list)
    description: str = ""
    price: float
    currency: str = "USD"
    duration_days: Optional[int] = None
    includes: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None


# ═══════════════════════════════════════════════════════════════
# SETTLEMENT RESULT
# ═══════════════════════════════════════════════════════════════

class PaymentReceipt(BaseModel):
    transaction_id: str
    authorization_code: str
    status: str = "APPROVED"
    settlement_timestamp: str = Field(default_factory=lambda: to_iso(utc_now()))
    payment_mandate_id: str
    cart_id: str
    total_charged: PaymentItem
    processor: str = "TropicalPay Demo"
    audit_trail: str = "Complete: Intent -> Cart -> Payment"


# ═══════════════════════════════════════════════════════════════
# A2A ENVELOPE
# ═══════════════════════════════════════════════════════════════

class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class DataPart(BaseModel):
    type: Literal["data"] = "data"
    data: Dict[str, Any]


Part = Annotated[Union[TextPart, DataPart], Field(discriminator="type")]


class A2AMessage(BaseModel):
    message_id: str
    context_id: Optional[str] = None
    task_id: Optional[str] = None
    role: Literal["agent", "user"] = "agent"
    parts: List[Part] = Field(default_factory=list)
    timestamp: str

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class A2ATask(BaseModel):
    id: str
    status: Literal["pending", "in_progress", "completed", "failed"] = "completed"
    result: Optional[A2AMessage] = None
    error: Optional[str] = None


# ═══════════════════════════════════════════════════════════════
# SHOPPING SESSION - externalized between stateless calls
# ═══════════════════════════════════════════════════════════════

SESSION_STATE_VERSION = 1


class TransactionStage(str, Enum):
    """Stages of one AP2 transaction."""
    IDLE = "idle"
    INTENT_GATHERING = "intent_gathering"
    CARTS_OFFERED = "carts_offered"
    PAYMENT_METHODS_OFFERED = "payment_methods_offered"
    PAYMENT_MANDATE_SIGNED = "payment_mandate_signed"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"


class ConversationTurn(BaseModel):
    type: Literal["system", "human", "ai"]
    content: str


class SessionState(BaseModel):
    version: Literal[1] = SESSION_STATE_VERSION
    context_id: Optional[str] = None
    stage: TransactionStage = TransactionStage.IDLE
    history: List[ConversationTurn] = Field(default_factory=list)
    intent_mandate: Optional[IntentMandate] = None
    cart_mandates: List[CartMandate] = Field(default_factory=list)
    selected_cart_id: Optional[str] = None
    payment_methods: List[PaymentMethod] = Field(default_factory=list)
    selected_payment_method_id: Optional[str] = None
    payment_mandate: Optional[PaymentMandate] = None
    failed_payment_mandate_ids: List[str] = Field(default_factory=list)
    receipt: Optional[PaymentReceipt] = None
    last_error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "SessionState":
        """Validate a serialized session handed back by the caller."""
        if not payload:
            return cls()
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid session payload",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def human_turns(self) -> List[str]:
        return [turn.content for turn in self.history if turn.type == "human"]

    def find_cart(self, cart_id: str) -> Optional[CartMandate]:
        for cart in self.cart_mandates:
            if cart.contents.id == cart_id:
                return cart
        return None

    def find_payment_method(self, method_id: str) -> Optional[PaymentMethod]:
        for method in self.payment_methods:
            if method.id == method_id:
                return method
        return None
