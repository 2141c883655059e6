import base64
import binascii
import hashlib
import hmac
import json
import secrets
from typing import Optional, Tuple, Union

from nacl import pwhash
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey
from pydantic import ValidationError

from .errors import MalformedProposal, Unauthorized
from .models import ProposalSlot, SignedProposal, format_timestamp

PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64
API_KEY_PREFIX = "mdk"

# Signed field order. Never reorder: existing signatures depend on it.
CANONICAL_FIELDS = (
    "version",
    "from_email",
    "from_pubkey",
    "to_email",
    "slot_start",
    "duration_minutes",
    "title",
    "nonce",
    "expires_at",
)


# ---- base64 helpers ----
def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode_exact(value: str, size: int) -> bytes:
    """Strict standard base64 of exactly ``size`` bytes, or ValueError."""
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        raw = base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError("malformed base64") from e
    if len(raw) != size:
        raise ValueError(f"expected {size} bytes, got {len(raw)}")
    # Reject non-canonical encodings so one value has exactly one spelling
    if b64encode(raw) != value:
        raise ValueError("non-canonical base64")
    return raw


# ---- canonical payload ----
def canonical_fields(proposal: SignedProposal) -> dict:
    return {
        "version": proposal.version,
        "from_email": proposal.from_email,
        "from_pubkey": proposal.from_pubkey,
        "to_email": proposal.to_email,
        "slot_start": format_timestamp(proposal.slot.start),
        "duration_minutes": proposal.slot.duration_minutes,
        "title": proposal.title,
        "nonce": proposal.nonce,
        "expires_at": format_timestamp(proposal.expires_at),
    }


def canonical_bytes(proposal: SignedProposal) -> bytes:
    return json.dumps(
        canonical_fields(proposal), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def parse_canonical(data: bytes) -> SignedProposal:
    """Parse canonical bytes back into an unsigned proposal.

    Only input that re-serializes to the identical bytes is accepted.
    """
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedProposal("Canonical payload is not valid JSON") from e
    if not isinstance(obj, dict) or tuple(obj) != CANONICAL_FIELDS:
        raise MalformedProposal("Canonical payload has unexpected fields")
    try:
        proposal = SignedProposal(
            version=obj["version"],
            from_email=obj["from_email"],
            from_pubkey=obj["from_pubkey"],
            to_email=obj["to_email"],
            slot=ProposalSlot(start=obj["slot_start"], duration_minutes=obj["duration_minutes"]),
            title=obj["title"],
            nonce=obj["nonce"],
            expires_at=obj["expires_at"],
        )
    except ValidationError as e:
        raise MalformedProposal(f"Canonical payload is invalid: {e.errors()[0]['msg']}") from e
    if canonical_bytes(proposal) != data:
        raise MalformedProposal("Payload is not in canonical form")
    return proposal


# ---- Ed25519 ----
def generate_signing_key() -> SigningKey:
    return SigningKey.generate()


def public_key_b64(signing_key: SigningKey) -> str:
    return b64encode(signing_key.verify_key.encode())


def sign(payload: bytes, private_key: Union[SigningKey, bytes]) -> str:
    key = private_key if isinstance(private_key, SigningKey) else SigningKey(private_key)
    return b64encode(key.sign(payload).signature)


def verify(payload: bytes, signature: str, public_key: str) -> bool:
    try:
        key_bytes = b64decode_exact(public_key, PUBLIC_KEY_SIZE)
        sig_bytes = b64decode_exact(signature, SIGNATURE_SIZE)
    except ValueError:
        return False
    try:
        VerifyKey(key_bytes).verify(payload, sig_bytes)
    except (CryptoError, ValueError):
        return False
    return True


def sign_proposal(proposal: SignedProposal, private_key: Union[SigningKey, bytes]) -> SignedProposal:
    signature = sign(canonical_bytes(proposal), private_key)
    return proposal.model_copy(update={"signature": signature})


def verify_proposal(proposal: SignedProposal, public_key: Optional[str] = None) -> bool:
    """Check the detached signature against ``public_key`` (default: the embedded key)."""
    return verify(canonical_bytes(proposal), proposal.signature, public_key or proposal.from_pubkey)


# ---- transport encoding ----
def encode_signed_proposal(proposal: SignedProposal) -> str:
    body = json.dumps(proposal.wire(), separators=(",", ":"), ensure_ascii=False)
    return b64encode(body.encode("utf-8"))


def decode_signed_proposal(value: Union[str, SignedProposal]) -> SignedProposal:
    if isinstance(value, SignedProposal):
        return value
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedProposal("Invalid base64") from e
    try:
        return SignedProposal.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedProposal(f"Invalid proposal JSON: {e.errors()[0]['msg']}") from e


# ---- Authorization: Bearer <api key> ----
def extract_bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Missing Bearer token")
    return authorization.split(" ", 1)[1].strip()


def generate_api_key(user_id: str) -> str:
    return f"{API_KEY_PREFIX}_{user_id}_{secrets.token_urlsafe(24)}"


def split_api_key(token: str) -> Tuple[str, str]:
    parts = token.split("_", 2)
    if len(parts) != 3 or parts[0] != API_KEY_PREFIX or not parts[1] or not parts[2]:
        raise Unauthorized("Invalid API key")
    return parts[1], parts[2]


_HASH_LIMITS = {
    "min": (pwhash.argon2id.OPSLIMIT_MIN, pwhash.argon2id.MEMLIMIT_MIN),
    "interactive": (pwhash.argon2id.OPSLIMIT_INTERACTIVE, pwhash.argon2id.MEMLIMIT_INTERACTIVE),
    "moderate": (pwhash.argon2id.OPSLIMIT_MODERATE, pwhash.argon2id.MEMLIMIT_MODERATE),
    "sensitive": (pwhash.argon2id.OPSLIMIT_SENSITIVE, pwhash.argon2id.MEMLIMIT_SENSITIVE),
}


def hash_credential(token: str, strength: str = "interactive") -> str:
    opslimit, memlimit = _HASH_LIMITS[strength]
    return pwhash.argon2id.str(token.encode("utf-8"), opslimit=opslimit, memlimit=memlimit).decode("ascii")


def verify_credential(token: str, hashed: str) -> bool:
    try:
        return pwhash.verify(hashed.encode("ascii"), token.encode("utf-8"))
    except CryptoError:
        return False


# ---- webhook HMAC ----
def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


def webhook_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(webhook_signature(body, secret), signature or "")
