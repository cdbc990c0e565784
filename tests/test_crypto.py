"""Tests for canonical digests, mandate signing and verification."""

import asyncio

import pytest

from ap2_vacation.ap2_types import CartMandate, PaymentMethod
from ap2_vacation.errors import ExpiredError, IntegrityError
from ap2_vacation.utils import (
    EcdsaSigner,
    HmacSigner,
    MandateIntegrityService,
    canonicalize,
    digest,
    find_data,
)

from conftest import TEST_SECRET


@pytest.fixture
def cart(merchant, intent_envelope):
    reply = asyncio.run(merchant.handle_message(intent_envelope()))
    raw = find_data(reply, "cart_mandates")
    return CartMandate.model_validate(raw[0])


class TestCanonicalDigest:
    def test_key_order_does_not_matter(self):
        a = {"b": 1, "a": {"y": [1, {"q": 1, "p": 2}], "x": "s"}}
        b = {"a": {"x": "s", "y": [1, {"p": 2, "q": 1}]}, "b": 1}
        assert canonicalize(a) == canonicalize(b)
        assert digest(a) == digest(b)

    def test_none_fields_are_dropped(self):
        assert digest({"a": 1, "b": None}) == digest({"a": 1})

    def test_model_and_wire_dict_agree(self, cart):
        wire = cart.contents.model_dump(mode="json", exclude_none=True)
        assert digest(cart.contents) == digest(wire)

    def test_value_change_changes_digest(self):
        assert digest({"total": 100.0}) != digest({"total": 100.01})

    def test_digest_is_sha256_hex(self):
        value = digest({"a": 1})
        assert len(value) == 64
        int(value, 16)


class TestCartSigning:
    def test_fresh_cart_verifies(self, integrity, cart):
        claims = integrity.verify_cart_mandate(cart)
        assert claims.cart_id == cart.contents.id
        assert claims.cart_hash == digest(cart.contents)
        assert claims.aud == "payment-processor"
        assert claims.exp - claims.iat == 15 * 60

    def test_header_names_merchant_key(self, integrity, cart):
        decoded = integrity.decode(cart.merchant_authorization)
        assert decoded["header"]["kid"] == "merchant-key-2024"
        assert decoded["header"]["alg"] == "HS256"
        assert decoded["claims"]["iss"] == "tropical-paradise-vacations"

    def test_token_expires_after_fifteen_minutes(self, integrity, clock, cart):
        integrity.verify(cart.merchant_authorization)
        clock.advance(15 * 60 + 1)
        with pytest.raises(ExpiredError):
            integrity.verify(cart.merchant_authorization)
        with pytest.raises(ExpiredError):
            integrity.verify_cart_mandate(cart)

    def test_tampering_is_caught_by_digest_not_signature(self, integrity, cart):
        cart.contents.payment_request.details.total.amount.value = 1.0
        # The token itself is still authentic
        integrity.verify(cart.merchant_authorization)
        with pytest.raises(IntegrityError):
            integrity.verify_cart_mandate(cart)

    def test_wrong_secret_is_rejected(self, clock, cart):
        other = MandateIntegrityService(HmacSigner("another-secret-that-is-long-enough-000"), clock=clock)
        with pytest.raises(IntegrityError):
            other.verify(cart.merchant_authorization)

    def test_unsigned_cart_is_rejected(self, integrity, cart):
        unsigned = CartMandate(contents=cart.contents)
        with pytest.raises(IntegrityError):
            integrity.verify_cart_mandate(unsigned)

    def test_garbage_token_is_integrity_error(self, integrity):
        with pytest.raises(IntegrityError):
            integrity.verify("not.a.jwt")

    def test_audience_mismatch(self, integrity, cart):
        with pytest.raises(IntegrityError):
            integrity.verify(cart.merchant_authorization, audience="merchant")


class TestPaymentSigning:
    @pytest.fixture
    def mandate(self, shopping_agent, cart):
        method = PaymentMethod(id="pm-001", alias="Primary Visa", type="card", last4="4242", brand="Visa")
        return shopping_agent.create_payment_mandate(cart, method)

    def test_mandate_copies_cart_total(self, mandate, cart):
        contents = mandate.payment_mandate_contents
        assert contents.payment_details_id == cart.contents.payment_request.details.id
        assert contents.payment_details_total == cart.contents.payment_request.details.total

    def test_cart_digest_is_chained(self, integrity, mandate, cart):
        claims = integrity.verify_payment_mandate(mandate, cart=cart)
        assert claims.transaction_data == [digest(mandate.payment_mandate_contents), digest(cart.contents)]
        assert integrity.decode(mandate.user_authorization)["header"]["kid"] == "user-key-2024"

    def test_payment_token_lives_one_hour(self, integrity, clock, mandate):
        clock.advance(59 * 60)
        integrity.verify_payment_mandate(mandate)
        clock.advance(2 * 60)
        with pytest.raises(ExpiredError):
            integrity.verify_payment_mandate(mandate)

    def test_tampered_total_fails(self, integrity, mandate):
        mandate.payment_mandate_contents.payment_details_total.amount.value = 10.0
        with pytest.raises(IntegrityError):
            integrity.verify_payment_mandate(mandate)

    def test_mandate_for_other_cart_fails_chain(self, integrity, merchant, intent_envelope, mandate):
        reply = asyncio.run(merchant.handle_message(intent_envelope()))
        raw = find_data(reply, "cart_mandates")
        other_cart = CartMandate.model_validate(raw[1])
        with pytest.raises(IntegrityError):
            integrity.verify_payment_mandate(mandate, cart=other_cart)


class TestEcdsaBackend:
    def test_es256_round_trip(self, clock):
        signer = EcdsaSigner.generate()
        service = MandateIntegrityService(signer, clock=clock)
        token = service.cart_signer.sign({"exp": int(clock()) + 60, "jti": "x"}, "merchant-key-2024")
        assert service.decode(token)["header"]["alg"] == "ES256"
        assert service.verify(token)["jti"] == "x"

    def test_verifier_only_key_cannot_sign(self):
        verifier = EcdsaSigner.generate().verifier()
        with pytest.raises(IntegrityError):
            verifier.sign({"a": 1}, "merchant-key-2024")

    def test_hmac_token_does_not_verify_under_es256(self, clock):
        hmac_service = MandateIntegrityService(HmacSigner(TEST_SECRET), clock=clock)
        token = hmac_service.cart_signer.sign({"exp": int(clock()) + 60}, "merchant-key-2024")
        es_service = MandateIntegrityService(EcdsaSigner.generate(), clock=clock)
        with pytest.raises(IntegrityError):
            es_service.verify(token)
