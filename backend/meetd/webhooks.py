"""Authenticated webhook notifications.

``notify`` only enqueues. Worker threads take deliveries off the queue and
POST them with an HMAC-SHA256 signature of the exact body, retrying with
exponential backoff before giving up. Nothing here ever raises into the
state transition that produced the event.
"""

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Callable, List, Literal, Optional, Protocol, Sequence, Tuple, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .models import ProposalSlot, Timestamp, UserRecord
from .security import webhook_signature

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Events ----------
class ProposalReceivedData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proposal_id: str
    from_email: str = Field(alias="from")
    from_pubkey: str
    to_email: str = Field(alias="to")
    slot: ProposalSlot
    title: Optional[str] = None
    expires_at: Timestamp
    signature: str


class ProposalAcceptedData(BaseModel):
    proposal_id: str
    by: str
    calendar_link: Optional[str] = None


class ProposalDeclinedData(BaseModel):
    proposal_id: str
    by: str


class ProposalExpiredData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proposal_id: str
    from_email: str = Field(alias="from")
    to_email: str = Field(alias="to")


class ProposalReceived(BaseModel):
    event: Literal["proposal.received"] = "proposal.received"
    timestamp: Timestamp = Field(default_factory=_utcnow)
    data: ProposalReceivedData


class ProposalAccepted(BaseModel):
    event: Literal["proposal.accepted"] = "proposal.accepted"
    timestamp: Timestamp = Field(default_factory=_utcnow)
    data: ProposalAcceptedData


class ProposalDeclined(BaseModel):
    event: Literal["proposal.declined"] = "proposal.declined"
    timestamp: Timestamp = Field(default_factory=_utcnow)
    data: ProposalDeclinedData


class ProposalExpired(BaseModel):
    event: Literal["proposal.expired"] = "proposal.expired"
    timestamp: Timestamp = Field(default_factory=_utcnow)
    data: ProposalExpiredData


WebhookEvent = Annotated[
    Union[ProposalReceived, ProposalAccepted, ProposalDeclined, ProposalExpired],
    Field(discriminator="event"),
]
webhook_event_adapter = TypeAdapter(WebhookEvent)


def event_body(event: BaseModel) -> bytes:
    return json.dumps(
        event.model_dump(mode="json", by_alias=True), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def parse_event(body: bytes):
    return webhook_event_adapter.validate_json(body)


class Notifier(Protocol):
    def notify(self, user: UserRecord, event: BaseModel) -> None: ...


class FanoutNotifier:
    """Hands every event to each sink; a failing sink never affects the others."""

    def __init__(self, sinks: Sequence[Notifier]):
        self.sinks = list(sinks)

    def notify(self, user: UserRecord, event: BaseModel) -> None:
        for sink in self.sinks:
            try:
                sink.notify(user, event)
            except Exception:
                logger.exception("notifier %s failed", type(sink).__name__)


# ---------- Delivery ----------
@dataclass
class Delivery:
    user_id: str
    url: str
    secret: str
    event: str
    body: bytes


class DeliveryQueue(Protocol):
    def put(self, delivery: Delivery) -> None: ...
    def get(self, timeout: float) -> Optional[Delivery]: ...
    def done(self, delivery: Delivery) -> None: ...


class MemoryDeliveryQueue:
    def __init__(self):
        self._queue: "queue.Queue[Delivery]" = queue.Queue()

    def put(self, delivery: Delivery) -> None:
        self._queue.put_nowait(delivery)

    def get(self, timeout: float) -> Optional[Delivery]:
        try:
            if timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def done(self, delivery: Delivery) -> None:
        self._queue.task_done()

    def join(self) -> None:
        self._queue.join()


class WebhookDeliveryError(Exception):
    pass


class WebhookNotifier:
    def __init__(
        self,
        signature_header: str = "X-Meetd-Signature",
        client: Optional[httpx.Client] = None,
        delivery_queue: Optional[DeliveryQueue] = None,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        timeout: float = 10.0,
        workers: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.signature_header = signature_header
        self.client = client or httpx.Client(timeout=timeout)
        self.queue = delivery_queue or MemoryDeliveryQueue()
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.workers = workers
        self._sleep = sleep
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ---- producer side ----
    def notify(self, user: UserRecord, event: BaseModel) -> None:
        if not user.webhook_url or not user.webhook_secret:
            return
        try:
            self.queue.put(
                Delivery(
                    user_id=user.id,
                    url=user.webhook_url,
                    secret=user.webhook_secret,
                    event=getattr(event, "event", "unknown"),
                    body=event_body(event),
                )
            )
        except Exception:
            logger.exception("could not enqueue webhook for user %s", user.id)

    # ---- workers ----
    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.workers):
            t = threading.Thread(target=self._run, name=f"webhook-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def close(self) -> None:
        self.stop()
        self.client.close()

    def _run(self) -> None:
        while not self._stop.is_set():
            delivery = self.queue.get(timeout=0.2)
            if delivery is None:
                continue
            try:
                self.deliver(delivery)
            except Exception:
                logger.exception("webhook worker error")
            finally:
                self.queue.done(delivery)

    def drain(self) -> int:
        """Deliver everything queued on the calling thread. Returns deliveries processed."""
        count = 0
        while True:
            delivery = self.queue.get(timeout=0)
            if delivery is None:
                return count
            try:
                self.deliver(delivery)
            finally:
                self.queue.done(delivery)
            count += 1

    # ---- sending ----
    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def send_once(self, url: str, secret: str, body: bytes) -> None:
        headers = {
            "Content-Type": "application/json",
            self.signature_header: webhook_signature(body, secret),
        }
        try:
            resp = self.client.post(url, content=body, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(f"request failed: {e}") from e
        if not resp.is_success:
            raise WebhookDeliveryError(f"endpoint answered {resp.status_code}")

    def deliver(self, delivery: Delivery) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.send_once(delivery.url, delivery.secret, delivery.body)
            except WebhookDeliveryError as e:
                logger.warning(
                    "webhook %s attempt %d/%d failed: %s",
                    delivery.event,
                    attempt,
                    self.max_attempts,
                    e,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff(attempt))
                continue
            logger.debug("webhook %s delivered to user %s", delivery.event, delivery.user_id)
            return True
        logger.error(
            "webhook %s dropped after %d attempts",
            delivery.event,
            self.max_attempts,
            extra={"user_id": delivery.user_id},
        )
        return False

    def send_test(self, user: UserRecord, event: BaseModel) -> Tuple[bool, Optional[str]]:
        if not user.webhook_url or not user.webhook_secret:
            return False, "No webhook configured"
        try:
            self.send_once(user.webhook_url, user.webhook_secret, event_body(event))
        except WebhookDeliveryError as e:
            return False, str(e)
        return True, None
