import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

import httpx
from nacl.signing import SigningKey

from .errors import Conflict, NotFound, Unauthorized, UpstreamUnavailable
from .models import UserRecord, Visibility, normalize_email
from .sealing import SealError, Sealer
from .security import (
    generate_api_key,
    generate_signing_key,
    generate_webhook_secret,
    hash_credential,
    public_key_b64,
    split_api_key,
    verify_credential,
)
from .storage import Store

logger = logging.getLogger(__name__)

# Same answer for "never registered" and anything else we do not publish.
_NO_KEY = "No public key published for this address"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyCustody:
    """Owns every user's signing key, bearer credential and calendar credential."""

    def __init__(
        self,
        store: Store,
        sealer: Sealer,
        hash_strength: str = "interactive",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.sealer = sealer
        self.hash_strength = hash_strength
        self.clock = clock

    # ---------- Provisioning ----------
    def provision(self, email: str, refresh_token: Optional[str] = None) -> Tuple[UserRecord, str]:
        email = normalize_email(email)
        if self.store.get_user_by_email(email) is not None:
            raise Conflict("Email is already registered")

        signing_key = generate_signing_key()
        user_id = uuid.uuid4().hex
        api_key = generate_api_key(user_id)
        user = UserRecord(
            id=user_id,
            email=email,
            encrypted_refresh_token=self.sealer.seal(refresh_token.encode("utf-8")) if refresh_token else None,
            public_key=public_key_b64(signing_key),
            encrypted_private_key=self.sealer.seal(signing_key.encode()),
            credential_hash=hash_credential(api_key, self.hash_strength),
            created_at=self.clock(),
        )
        self.store.create_user(user)
        logger.info("provisioned user %s", user.id)
        return user, api_key

    def issue_credential(self, user: UserRecord) -> str:
        """Mint a new API key; the previous one stops working. Plaintext is returned once."""
        api_key = generate_api_key(user.id)
        updated = user.model_copy(update={"credential_hash": hash_credential(api_key, self.hash_strength)})
        self.store.update_user(updated)
        logger.info("issued new credential for user %s", user.id)
        return api_key

    def authenticate(self, token: str) -> UserRecord:
        user_id, _ = split_api_key(token)
        user = self.store.get_user(user_id)
        if user is None or not verify_credential(token, user.credential_hash):
            raise Unauthorized("Invalid API key")
        return user

    # ---------- Keys ----------
    def get_public_key(self, email: str) -> str:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            raise NotFound(_NO_KEY)
        return user.public_key

    def signing_key(self, user: UserRecord) -> SigningKey:
        try:
            return SigningKey(self.sealer.unseal(user.encrypted_private_key))
        except SealError:
            logger.error("private key for user %s could not be unsealed", user.id)
            raise

    def store_refresh_token(self, user: UserRecord, refresh_token: Optional[str]) -> UserRecord:
        sealed = self.sealer.seal(refresh_token.encode("utf-8")) if refresh_token else None
        updated = user.model_copy(update={"encrypted_refresh_token": sealed})
        self.store.update_user(updated)
        return updated

    def refresh_token(self, user: UserRecord) -> Optional[str]:
        if user.encrypted_refresh_token is None:
            return None
        return self.sealer.unseal(user.encrypted_refresh_token).decode("utf-8")

    # ---------- Config ----------
    def update_visibility(self, user: UserRecord, visibility: Visibility) -> UserRecord:
        updated = user.model_copy(update={"visibility": visibility})
        self.store.update_user(updated)
        return updated

    def register_webhook(self, user: UserRecord, url: str) -> UserRecord:
        # A new secret every time the endpoint changes
        updated = user.model_copy(update={"webhook_url": url, "webhook_secret": generate_webhook_secret()})
        self.store.update_user(updated)
        logger.info("webhook registered for user %s", user.id)
        return updated

    def remove_webhook(self, user: UserRecord) -> UserRecord:
        updated = user.model_copy(update={"webhook_url": None, "webhook_secret": None})
        self.store.update_user(updated)
        return updated


class KeyDirectory:
    """Resolves the published key of a sender: local users first, then a remote directory."""

    def __init__(self, custody: KeyCustody, base_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.custody = custody
        self.base_url = base_url.rstrip("/") if base_url else None
        self._client = client

    def published_key(self, email: str) -> Optional[str]:
        try:
            return self.custody.get_public_key(email)
        except NotFound:
            pass
        if not self.base_url:
            return None
        client = self._client or httpx.Client(timeout=10.0)
        try:
            resp = client.get(f"{self.base_url}/v1/agent/pubkey/{normalize_email(email)}")
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Key directory unavailable: {e}") from e
        finally:
            if self._client is None:
                client.close()
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"Key directory returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable("Key directory returned a non-JSON body") from e
        if not isinstance(body, dict) or not isinstance(body.get("public_key"), str):
            raise UpstreamUnavailable("Key directory response has no public_key")
        return body["public_key"]
