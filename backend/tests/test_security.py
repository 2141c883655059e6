"""Canonical payload, Ed25519 signatures and credential helpers."""

import base64
import json
import uuid
from datetime import datetime, timezone

import pytest

from meetd.errors import MalformedProposal, Unauthorized
from meetd.models import ProposalSlot, SignedProposal
from meetd.security import (
    b64decode_exact,
    canonical_bytes,
    decode_signed_proposal,
    encode_signed_proposal,
    extract_bearer,
    generate_api_key,
    generate_signing_key,
    hash_credential,
    parse_canonical,
    public_key_b64,
    sign,
    sign_proposal,
    split_api_key,
    verify,
    verify_credential,
    verify_proposal,
    verify_webhook_signature,
    webhook_signature,
)


@pytest.fixture
def key():
    return generate_signing_key()


@pytest.fixture
def proposal(key) -> SignedProposal:
    unsigned = SignedProposal(
        from_email="alice@example.com",
        from_pubkey=public_key_b64(key),
        to_email="bob@example.com",
        slot=ProposalSlot(start=datetime(2026, 2, 3, 10, 0, tzinfo=timezone.utc), duration_minutes=30),
        title="Sync",
        nonce=str(uuid.uuid4()),
        expires_at=datetime(2026, 2, 7, tzinfo=timezone.utc),
    )
    return sign_proposal(unsigned, key)


def _flip_bit(data: bytes, index: int) -> bytes:
    byte, bit = divmod(index, 8)
    mutated = bytearray(data)
    mutated[byte] ^= 1 << bit
    return bytes(mutated)


class TestCanonicalPayload:
    def test_field_order_and_format(self, proposal):
        text = canonical_bytes(proposal).decode("utf-8")
        assert text.startswith('{"version":1,"from_email":"alice@example.com",')
        assert '"slot_start":"2026-02-03T10:00:00Z","duration_minutes":30' in text
        assert text.endswith('"expires_at":"2026-02-07T00:00:00Z"}')
        assert " " not in text.replace("Sync", "")

    def test_parse_round_trips_byte_identically(self, proposal):
        data = canonical_bytes(proposal)
        assert canonical_bytes(parse_canonical(data)) == data

    def test_signature_is_not_part_of_payload(self, proposal):
        assert canonical_bytes(proposal) == canonical_bytes(proposal.model_copy(update={"signature": ""}))

    def test_parse_rejects_non_canonical_whitespace(self, proposal):
        obj = json.loads(canonical_bytes(proposal))
        with pytest.raises(MalformedProposal):
            parse_canonical(json.dumps(obj).encode("utf-8"))

    def test_parse_rejects_reordered_fields(self, proposal):
        obj = json.loads(canonical_bytes(proposal))
        reordered = {"nonce": obj.pop("nonce"), **obj}
        with pytest.raises(MalformedProposal):
            parse_canonical(json.dumps(reordered, separators=(",", ":")).encode("utf-8"))

    def test_parse_rejects_garbage(self):
        with pytest.raises(MalformedProposal):
            parse_canonical(b"\xff\xfe not json")

    def test_subsecond_timestamps_are_rejected(self):
        with pytest.raises(ValueError):
            ProposalSlot(start=datetime(2026, 2, 3, 10, 0, 0, 500, tzinfo=timezone.utc), duration_minutes=30)


class TestSignatures:
    def test_sign_verify(self, proposal):
        assert verify_proposal(proposal)

    def test_every_payload_bit_matters(self, proposal, key):
        payload = canonical_bytes(proposal)
        pub = public_key_b64(key)
        for index in range(0, len(payload) * 8, 7):
            assert not verify(_flip_bit(payload, index), proposal.signature, pub)

    def test_every_signature_bit_matters(self, proposal, key):
        payload = canonical_bytes(proposal)
        raw = base64.b64decode(proposal.signature)
        pub = public_key_b64(key)
        for index in range(len(raw) * 8):
            mutated = base64.b64encode(_flip_bit(raw, index)).decode("ascii")
            assert not verify(payload, mutated, pub)

    def test_wrong_key_fails(self, proposal):
        other = public_key_b64(generate_signing_key())
        assert not verify_proposal(proposal, other)

    def test_substituted_embedded_key_fails(self, proposal):
        forged = proposal.model_copy(update={"from_pubkey": public_key_b64(generate_signing_key())})
        assert not verify_proposal(forged)

    @pytest.mark.parametrize(
        "signature",
        ["", "not-base64!!", base64.b64encode(b"x" * 63).decode(), base64.b64encode(b"x" * 65).decode()],
    )
    def test_malformed_signature_is_false_not_error(self, proposal, signature):
        assert not verify(canonical_bytes(proposal), signature, proposal.from_pubkey)

    @pytest.mark.parametrize("pubkey", ["", "%%%", base64.b64encode(b"k" * 31).decode()])
    def test_malformed_public_key_is_false_not_error(self, proposal, pubkey):
        assert not verify(canonical_bytes(proposal), proposal.signature, pubkey)

    def test_sign_accepts_raw_seed(self, key):
        assert verify(b"hello", sign(b"hello", key.encode()), public_key_b64(key))

    def test_b64decode_exact_rejects_non_canonical(self):
        value = base64.b64encode(b"\x00" * 32).decode()
        assert b64decode_exact(value, 32) == b"\x00" * 32
        with pytest.raises(ValueError):
            b64decode_exact(value[:-2] + "B=", 32)


class TestTransportEncoding:
    def test_encode_decode(self, proposal):
        decoded = decode_signed_proposal(encode_signed_proposal(proposal))
        assert decoded == proposal
        assert verify_proposal(decoded)

    def test_wire_uses_from_and_to(self, proposal):
        wire = proposal.wire()
        assert wire["from"] == "alice@example.com"
        assert wire["to"] == "bob@example.com"
        assert wire["slot"]["start"] == "2026-02-03T10:00:00Z"

    def test_model_passes_through(self, proposal):
        assert decode_signed_proposal(proposal) is proposal

    @pytest.mark.parametrize("value", ["***", base64.b64encode(b"{not json").decode(), base64.b64encode(b"{}").decode()])
    def test_bad_transport_is_malformed(self, value):
        with pytest.raises(MalformedProposal):
            decode_signed_proposal(value)


class TestCredentials:
    def test_bearer(self):
        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("bearer  abc ") == "abc"
        for header in (None, "", "Basic abc"):
            with pytest.raises(Unauthorized):
                extract_bearer(header)

    def test_api_key_shape(self):
        token = generate_api_key("u123")
        assert token.startswith("mdk_u123_")
        assert split_api_key(token)[0] == "u123"
        with pytest.raises(Unauthorized):
            split_api_key("nope")

    def test_hash_and_verify(self):
        hashed = hash_credential("secret-token", "min")
        assert hashed != "secret-token"
        assert verify_credential("secret-token", hashed)
        assert not verify_credential("other-token", hashed)

    def test_webhook_signature(self):
        body = b'{"event":"proposal.received"}'
        sig = webhook_signature(body, "s3cret")
        assert len(sig) == 64
        assert verify_webhook_signature(body, sig, "s3cret")
        assert not verify_webhook_signature(body + b" ", sig, "s3cret")
        assert not verify_webhook_signature(body, sig, "other")
