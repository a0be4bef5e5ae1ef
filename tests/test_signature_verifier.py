"""
Tests for HMAC webhook signature verification.
"""
import hashlib
import hmac

import pytest

from relay.domain.services.signature_verifier import HmacSignatureVerifier, raw_payload_bytes


BODY = b'{"id":"evt_123","type":"invoice.paid"}'


def _hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestHmacSignatureVerifier:

    @pytest.fixture
    def verifier(self) -> HmacSignatureVerifier:
        return HmacSignatureVerifier({"stripe": "whsec_test", "GitHub": "gh_secret"})

    @pytest.mark.unit
    def test_prefixed_signature_accepted(self, verifier):
        assert verifier.verify("stripe", f"sha256={_hex('whsec_test', BODY)}", BODY)

    @pytest.mark.unit
    def test_bare_hex_signature_accepted(self, verifier):
        assert verifier.verify("stripe", _hex("whsec_test", BODY), BODY)

    @pytest.mark.unit
    def test_uppercase_hex_accepted(self, verifier):
        assert verifier.verify("stripe", _hex("whsec_test", BODY).upper(), BODY)

    @pytest.mark.unit
    def test_provider_lookup_is_case_insensitive(self, verifier):
        assert verifier.verify("github", _hex("gh_secret", BODY), BODY)
        assert verifier.verify("STRIPE", _hex("whsec_test", BODY), BODY)

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, verifier):
        assert not verifier.verify("stripe", _hex("other", BODY), BODY)

    @pytest.mark.unit
    def test_tampered_body_rejected(self, verifier):
        signature = _hex("whsec_test", BODY)
        assert not verifier.verify("stripe", signature, BODY + b" ")

    @pytest.mark.unit
    def test_unknown_provider_rejected(self, verifier):
        assert not verifier.verify("paypal", _hex("whsec_test", BODY), BODY)

    @pytest.mark.unit
    def test_empty_and_non_ascii_signatures_rejected(self, verifier):
        assert not verifier.verify("stripe", "", BODY)
        assert not verifier.verify("stripe", "sha256=חתימה", BODY)

    @pytest.mark.unit
    def test_sign_round_trips_through_verify(self, verifier):
        signature = verifier.sign("stripe", BODY)
        assert signature.startswith("sha256=")
        assert verifier.verify("stripe", signature, BODY)

    @pytest.mark.unit
    def test_secrets_default_to_settings(self):
        # conftest sets WEBHOOK_PROVIDER_SECRETS=stripe:whsec_test,github:gh_secret
        verifier = HmacSignatureVerifier()
        assert verifier.verify("stripe", _hex("whsec_test", BODY), BODY)


class TestRawPayloadBytes:

    @pytest.mark.unit
    def test_bytes_used_as_is(self):
        assert raw_payload_bytes(BODY) is BODY

    @pytest.mark.unit
    def test_str_is_utf8_encoded(self):
        assert raw_payload_bytes("שלום") == "שלום".encode("utf-8")

    @pytest.mark.unit
    def test_parsed_json_is_canonical(self):
        assert raw_payload_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'
        assert raw_payload_bytes({"a": [1, 2], "b": 1}) == raw_payload_bytes({"b": 1, "a": [1, 2]})
