"""
AP2 Cryptographic Utilities
Mandate digests and detached-signature JWTs for Cart and Payment mandates
"""

import hashlib
import json
import random
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel

from ..ap2_types import (
    CartMandate,
    CartMandateClaims,
    PaymentMandate,
    PaymentMandateClaims,
    parse_timestamp,
)
from ..config import (
    AP2_SIGNING_ALGORITHM,
    AP2_SIGNING_PRIVATE_KEY_PEM,
    AP2_SIGNING_SECRET,
    CART_TOKEN_TTL_MINUTES,
    MERCHANT_AGENT_SUBJECT,
    MERCHANT_AUDIENCE,
    MERCHANT_ID,
    MERCHANT_KEY_ID,
    PAYMENT_PROCESSOR_AUDIENCE,
    PAYMENT_TOKEN_TTL_MINUTES,
    USER_CREDENTIAL_SUBJECT,
    USER_DID,
    USER_KEY_ID,
)
from ..errors import ExpiredError, IntegrityError
from .logger import get_logger

logger = get_logger("MandateIntegrity")


# ═══════════════════════════════════════════════════════════════
# Canonicalization & digests
# ═══════════════════════════════════════════════════════════════

def _strip_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(v) for v in value]
    return value


def canonicalize(content: Union[BaseModel, Dict[str, Any]]) -> str:
    """
    Canonical JSON for hashing.

    Keys are sorted at every depth and unset (None) fields are dropped, so a
    pydantic model and its wire dict canonicalize to the same string.
    """
    if isinstance(content, BaseModel):
        content = content.model_dump(mode="json")
    return json.dumps(
        _strip_none(content),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def digest(content: Union[BaseModel, Dict[str, Any]]) -> str:
    """SHA-256 hex digest of the canonical form of content."""
    return hashlib.sha256(canonicalize(content).encode("utf-8")).hexdigest()


# ═══════════════════════════════════════════════════════════════
# Signer backends
# ═══════════════════════════════════════════════════════════════

class Signer:
    """
    Signing capability for compact JWS tokens.

    Subclasses pick the key scheme; the mandate protocol never looks past
    ``sign`` and ``verify``.
    """

    algorithm: str = ""

    def sign(self, claims: Dict[str, Any], key_id: str) -> str:
        raise NotImplementedError

    def verify(self, token: str) -> Dict[str, Any]:
        """Check the signature only. Expiry is left to the caller's clock."""
        raise NotImplementedError


class HmacSigner(Signer):
    """HS256 with one shared secret. Demo only: every holder can also sign."""

    algorithm = "HS256"

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Signing secret is required")
        self._secret = secret.encode("utf-8")

    def sign(self, claims: Dict[str, Any], key_id: str) -> str:
        return jwt.encode(claims, self._secret, algorithm=self.algorithm, headers={"kid": key_id})

    def verify(self, token: str) -> Dict[str, Any]:
        return _decode_verified(token, self._secret, self.algorithm)


class EcdsaVerifier(Signer):
    """ES256 verification with a public key only."""

    algorithm = "ES256"

    def __init__(self, public_key: ec.EllipticCurvePublicKey):
        self._public_key = public_key

    def sign(self, claims: Dict[str, Any], key_id: str) -> str:
        raise IntegrityError("Verification-only key cannot sign", details={"key_id": key_id})

    def verify(self, token: str) -> Dict[str, Any]:
        return _decode_verified(token, self._public_key, self.algorithm)


class EcdsaSigner(EcdsaVerifier):
    """ES256 over a P-256 key pair, the shape a per-party production key takes."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        super().__init__(private_key.public_key())
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "EcdsaSigner":
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def from_pem(cls, pem: str) -> "EcdsaSigner":
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ValueError("ES256 signing requires an EC private key")
        return cls(key)

    def verifier(self) -> EcdsaVerifier:
        return EcdsaVerifier(self._public_key)

    def sign(self, claims: Dict[str, Any], key_id: str) -> str:
        return jwt.encode(claims, self._private_key, algorithm=self.algorithm, headers={"kid": key_id})


def _decode_verified(token: str, key: Any, algorithm: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            options={
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "verify_aud": False,
            },
        )
    except jwt.InvalidSignatureError as e:
        raise IntegrityError("Token signature does not validate") from e
    except jwt.InvalidTokenError as e:
        raise IntegrityError(f"Malformed token: {e}") from e


def build_signer_from_config() -> Signer:
    """Create the process-wide signer from environment configuration."""
    if AP2_SIGNING_ALGORITHM == "HS256":
        return HmacSigner(AP2_SIGNING_SECRET)
    if AP2_SIGNING_ALGORITHM == "ES256":
        if AP2_SIGNING_PRIVATE_KEY_PEM:
            return EcdsaSigner.from_pem(AP2_SIGNING_PRIVATE_KEY_PEM)
        logger.warning("AP2_SIGNING_PRIVATE_KEY_PEM not set, generating an ephemeral ES256 key")
        return EcdsaSigner.generate()
    raise ValueError(f"Unsupported signing algorithm: {AP2_SIGNING_ALGORITHM}")


# ═══════════════════════════════════════════════════════════════
# Mandate Integrity Service
# ═══════════════════════════════════════════════════════════════

class MandateIntegrityService:
    """
    Signs and verifies Cart and Payment mandates.

    Tokens carry a digest of the mandate contents rather than the contents
    themselves (detached signature). Checking a mandate therefore takes two
    independent steps: ``verify`` proves the token is authentic and live, and
    recomputing ``digest`` over the contents proves they were not edited after
    signing. ``verify_cart_mandate`` and ``verify_payment_mandate`` do both.
    """

    def __init__(
        self,
        signer: Signer,
        payment_signer: Optional[Signer] = None,
        merchant_id: str = MERCHANT_ID,
        merchant_agent: str = MERCHANT_AGENT_SUBJECT,
        user_did: str = USER_DID,
        cart_token_ttl: timedelta = timedelta(minutes=CART_TOKEN_TTL_MINUTES),
        payment_token_ttl: timedelta = timedelta(minutes=PAYMENT_TOKEN_TTL_MINUTES),
        clock: Callable[[], float] = time.time,
    ):
        self.cart_signer = signer
        self.payment_signer = payment_signer or signer
        self.merchant_id = merchant_id
        self.merchant_agent = merchant_agent
        self.user_did = user_did
        self.cart_token_ttl = cart_token_ttl
        self.payment_token_ttl = payment_token_ttl
        self.clock = clock

    def now(self) -> float:
        return self.clock()

    @staticmethod
    def digest(content: Union[BaseModel, Dict[str, Any]]) -> str:
        return digest(content)

    def sign_cart(self, contents) -> str:
        """Merchant signature over a CartContents."""
        issued_at = int(self.now())
        claims = {
            "iss": self.merchant_id,
            "sub": self.merchant_agent,
            "aud": PAYMENT_PROCESSOR_AUDIENCE,
            "cart_id": contents.id,
            "cart_hash": digest(contents),
            "iat": issued_at,
            "exp": issued_at + int(self.cart_token_ttl.total_seconds()),
            "jti": f"jwt-{contents.id}-{uuid.uuid4().hex[:8]}",
        }
        return self.cart_signer.sign(claims, MERCHANT_KEY_ID)

    def sign_payment(self, contents, cart_hash: Optional[str] = None) -> str:
        """
        User signature over a PaymentMandateContents.

        When the signed cart's digest is supplied it is chained into
        ``transaction_data`` after the mandate digest.
        """
        issued_at = int(self.now())
        mandate_hash = digest(contents)
        transaction_data = [mandate_hash]
        if cart_hash:
            transaction_data.append(cart_hash)
        claims = {
            "iss": self.user_did,
            "sub": USER_CREDENTIAL_SUBJECT,
            "aud": MERCHANT_AUDIENCE,
            "payment_mandate_id": contents.payment_mandate_id,
            "mandate_hash": mandate_hash,
            "transaction_data": transaction_data,
            "iat": issued_at,
            "exp": issued_at + int(self.payment_token_ttl.total_seconds()),
            "jti": f"user-sig-{contents.payment_mandate_id}-{uuid.uuid4().hex[:8]}",
        }
        return self.payment_signer.sign(claims, USER_KEY_ID)

    def verify(self, token: str, audience: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify signature and token expiry.

        Raises IntegrityError for a bad signature, unknown key or wrong
        audience, ExpiredError once ``exp`` has passed.
        """
        key_id = self._header(token).get("kid")
        if key_id == MERCHANT_KEY_ID:
            claims = self.cart_signer.verify(token)
        elif key_id == USER_KEY_ID:
            claims = self.payment_signer.verify(token)
        else:
            raise IntegrityError("Token signed with an unknown key", details={"kid": key_id})

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise IntegrityError("Token has no expiry claim")
        if self.now() >= exp:
            raise ExpiredError("Token has expired", details={"exp": exp, "jti": claims.get("jti")})

        if audience is not None and claims.get("aud") != audience:
            raise IntegrityError(
                "Token audience mismatch",
                details={"expected": audience, "actual": claims.get("aud")},
            )
        return claims

    def decode(self, token: str) -> Dict[str, Any]:
        """Decode without verification. For audit display, never for trust decisions."""
        try:
            return {
                "header": jwt.get_unverified_header(token),
                "claims": jwt.decode(token, options={"verify_signature": False}),
            }
        except jwt.InvalidTokenError as e:
            raise IntegrityError(f"Malformed token: {e}") from e

    def check_not_expired(self, expiry: str, what: str):
        if parse_timestamp(expiry).timestamp() <= self.now():
            raise ExpiredError(f"{what} has expired", details={"expiry": expiry})

    def verify_cart_mandate(self, cart: CartMandate) -> CartMandateClaims:
        """Signature, token expiry, cart expiry and content digest must all hold."""
        cart_id = cart.contents.id
        if not cart.merchant_authorization:
            raise IntegrityError("CartMandate is not signed", details={"cart_id": cart_id})

        claims = CartMandateClaims.model_validate(
            self.verify(cart.merchant_authorization, audience=PAYMENT_PROCESSOR_AUDIENCE)
        )
        self.check_not_expired(cart.contents.cart_expiry, f"Cart {cart_id}")

        if claims.cart_id != cart_id:
            raise IntegrityError(
                "Cart token is bound to a different cart",
                details={"cart_id": cart_id, "token_cart_id": claims.cart_id},
            )
        if claims.cart_hash != digest(cart.contents):
            raise IntegrityError("Cart contents were modified after signing", details={"cart_id": cart_id})
        return claims

    def verify_payment_mandate(
        self,
        mandate: PaymentMandate,
        cart: Optional[CartMandate] = None,
    ) -> PaymentMandateClaims:
        """
        Check the user's authorization over a PaymentMandate.

        With the cart supplied, also checks the mandate references that cart's
        payment details, carries its exact total, and chains its digest.
        """
        contents = mandate.payment_mandate_contents
        mandate_id = contents.payment_mandate_id
        if not mandate.user_authorization:
            raise IntegrityError("PaymentMandate is not signed", details={"payment_mandate_id": mandate_id})

        claims = PaymentMandateClaims.model_validate(
            self.verify(mandate.user_authorization, audience=MERCHANT_AUDIENCE)
        )
        if claims.payment_mandate_id != mandate_id:
            raise IntegrityError(
                "Payment token is bound to a different mandate",
                details={"payment_mandate_id": mandate_id, "token_mandate_id": claims.payment_mandate_id},
            )
        if claims.mandate_hash != digest(contents):
            raise IntegrityError(
                "Payment mandate contents were modified after signing",
                details={"payment_mandate_id": mandate_id},
            )

        if cart is not None:
            details = cart.contents.payment_request.details
            if contents.payment_details_id != details.id:
                raise IntegrityError("Payment mandate references a different cart", details={"payment_mandate_id": mandate_id})
            if contents.payment_details_total != details.total:
                raise IntegrityError("Payment total differs from the signed cart total", details={"payment_mandate_id": mandate_id})
            if digest(cart.contents) not in claims.transaction_data:
                raise IntegrityError("Payment mandate is not chained to the cart digest", details={"payment_mandate_id": mandate_id})
        return claims

    @staticmethod
    def _header(token: str) -> Dict[str, Any]:
        try:
            return jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise IntegrityError(f"Malformed token: {e}") from e


def generate_transaction_id() -> str:
    """Generate a unique transaction ID."""
    return f"TXN-{uuid.uuid4().hex[:10]}"


def generate_authorization_code() -> str:
    """Generate a simulated authorization code (6 digits)."""
    return f"AUTH-{random.randint(100000, 999999)}"
