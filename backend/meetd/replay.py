import logging
from datetime import datetime, timedelta

from .errors import ReplayDetected
from .storage import Store

logger = logging.getLogger(__name__)


class ReplayGuard:
    """Single-use nonce ledger.

    ``record_if_new`` is one atomic insert in the store, so among concurrent
    callers presenting the same nonce exactly one succeeds.
    """

    def __init__(self, store: Store, max_lifetime: timedelta = timedelta(days=7)):
        self.store = store
        self.max_lifetime = max_lifetime

    def record_if_new(self, nonce: str, now: datetime) -> None:
        if not nonce:
            raise ReplayDetected("Missing nonce")
        if not self.store.record_nonce_if_new(nonce, now):
            logger.warning("replayed nonce rejected", extra={"nonce": nonce})
            raise ReplayDetected("Nonce already used (replay attack?)")

    def prune(self, now: datetime) -> int:
        # A nonce older than the longest proposal lifetime can only belong to an expired proposal
        removed = self.store.prune_nonces(now - self.max_lifetime)
        if removed:
            logger.debug("pruned %d used nonces", removed)
        return removed
