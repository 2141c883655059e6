"""Proposal lifecycle.

States run ``pending -> accepted | declined | expired`` and the three sinks
are terminal. Every transition is a conditional store update that only
succeeds from ``pending``, so concurrent deciders resolve to exactly one
winner. Expiry is settled lazily on every read and periodically by ``sweep``.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

from pydantic import BaseModel

from .calendar import CalendarProvider, NullCalendar
from .errors import (
    Forbidden,
    InvalidDuration,
    InvalidSlot,
    InvalidTransition,
    MalformedProposal,
    MeetdError,
    NotFound,
    SignatureInvalid,
)
from .keys import KeyCustody, KeyDirectory
from .models import (
    MAX_DURATION_MINUTES,
    PROPOSAL_VERSION,
    CalendarEventOut,
    ProposalRecord,
    ProposalSlot,
    ProposalStatus,
    SignedProposal,
    UserRecord,
    VerifyOut,
    normalize_email,
    utc,
)
from .replay import ReplayGuard
from .security import decode_signed_proposal, encode_signed_proposal, sign_proposal, verify_proposal
from .storage import Store
from .webhooks import (
    Notifier,
    ProposalAccepted,
    ProposalAcceptedData,
    ProposalDeclined,
    ProposalDeclinedData,
    ProposalExpired,
    ProposalExpiredData,
    ProposalReceived,
    ProposalReceivedData,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Meeting"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_proposal_id() -> str:
    return "prop_" + uuid.uuid4().hex[:12]


def _check_slot(start: datetime, duration_minutes: int) -> None:
    if duration_minutes <= 0:
        raise InvalidDuration("duration_minutes must be positive")
    if duration_minutes > MAX_DURATION_MINUTES:
        raise InvalidDuration(f"duration_minutes must be at most {MAX_DURATION_MINUTES}")
    try:
        start + timedelta(minutes=duration_minutes)
    except OverflowError:
        raise InvalidSlot("Slot end is out of range") from None


@dataclass
class CreatedProposal:
    record: ProposalRecord
    signed: SignedProposal
    encoded: str
    accept_link: str


@dataclass
class TransitionResult:
    record: ProposalRecord
    event: Optional[CalendarEventOut] = None
    repeated: bool = False


class ProposalEngine:
    def __init__(
        self,
        store: Store,
        custody: KeyCustody,
        replay: ReplayGuard,
        notifier: Notifier,
        calendar: Optional[CalendarProvider] = None,
        directory: Optional[KeyDirectory] = None,
        public_url: str = "http://localhost:8080",
        proposal_ttl: timedelta = timedelta(days=7),
        max_lifetime: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.custody = custody
        self.replay = replay
        self.notifier = notifier
        self.calendar = calendar or NullCalendar()
        self.directory = directory or KeyDirectory(custody)
        self.public_url = public_url.rstrip("/")
        self.proposal_ttl = proposal_ttl
        self.max_lifetime = max_lifetime
        self.clock = clock

    # -------------------- Create --------------------
    def create(
        self,
        sender: UserRecord,
        to_email: str,
        slot_start: datetime,
        duration_minutes: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> CreatedProposal:
        now = self.clock()
        slot_start = utc(slot_start).replace(microsecond=0)
        _check_slot(slot_start, duration_minutes)
        if slot_start <= now:
            raise InvalidSlot("Slot start must be in the future")
        expires_at = utc(expires_at) if expires_at else now + self.proposal_ttl
        expires_at = expires_at.replace(microsecond=0)
        self._check_lifetime(expires_at, now)

        unsigned = SignedProposal(
            version=PROPOSAL_VERSION,
            from_email=sender.email,
            from_pubkey=sender.public_key,
            to_email=normalize_email(to_email),
            slot=ProposalSlot(start=slot_start, duration_minutes=duration_minutes),
            title=title,
            nonce=str(uuid.uuid4()),
            expires_at=expires_at,
        )
        signed = sign_proposal(unsigned, self.custody.signing_key(sender))
        if not verify_proposal(signed, sender.public_key):
            raise SignatureInvalid("Stored key pair does not verify")

        self.replay.record_if_new(signed.nonce, now)
        record = self._record(signed, sender.id, description, now)
        self.store.insert_proposal(record)
        logger.info("proposal %s created by %s", record.id, sender.id)

        self._notify_email(record.to_email, self._received_event(record))
        return CreatedProposal(
            record=record,
            signed=signed,
            encoded=encode_signed_proposal(signed),
            accept_link=f"{self.public_url}/accept/{record.id}",
        )

    # -------------------- Read --------------------
    def get(self, actor: UserRecord, proposal_id: str) -> ProposalRecord:
        record = self._load(proposal_id)
        if actor.email not in (record.from_email, record.to_email):
            raise Forbidden("Not authorized to view this proposal")
        return self._settle(record)

    def inbox(self, actor: UserRecord, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]:
        return self._settled_list(self.store.proposals_to(actor.email), status)

    def sent(self, actor: UserRecord, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]:
        return self._settled_list(self.store.proposals_from(actor.email), status)

    def _settled_list(self, records: List[ProposalRecord], status: Optional[ProposalStatus]) -> List[ProposalRecord]:
        settled = [self._settle(r) for r in records]
        if status is None:
            return settled
        return [r for r in settled if r.status is status]

    # -------------------- Decide --------------------
    def accept(self, actor: UserRecord, proposal_id: str) -> TransitionResult:
        return self._decide(actor, self._load_as_recipient(actor, proposal_id), ProposalStatus.ACCEPTED)

    def decline(self, actor: UserRecord, proposal_id: str) -> TransitionResult:
        return self._decide(actor, self._load_as_recipient(actor, proposal_id), ProposalStatus.DECLINED)

    def _load_as_recipient(self, actor: UserRecord, proposal_id: str) -> ProposalRecord:
        record = self._load(proposal_id)
        if record.to_email != actor.email:
            raise Forbidden("Only the recipient can decide on this proposal")
        return self._settle(record)

    def _decide(self, actor: UserRecord, record: ProposalRecord, target: ProposalStatus) -> TransitionResult:
        if record.status is target:
            return TransitionResult(record=record, event=self._event_summary(record), repeated=True)
        if record.status is not ProposalStatus.PENDING:
            raise InvalidTransition(f"Proposal is already {record.status.value}")

        decided = record.model_copy(update={"status": target})
        # Computed before the update: nothing after a commit may raise on the slot
        summary = self._event_summary(decided)
        if not self.store.transition_proposal(record.id, ProposalStatus.PENDING, target, unexpired_at=self.clock()):
            # Lost a race or expired meanwhile: repeat of the same decision is fine, anything else is a conflict
            current = self._settle(self._load(record.id))
            if current.status is target:
                return TransitionResult(record=current, event=self._event_summary(current), repeated=True)
            raise InvalidTransition(f"Proposal is already {current.status.value}")

        record = decided
        logger.info("proposal %s %s by %s", record.id, target.value, actor.id)
        if target is ProposalStatus.ACCEPTED:
            event = self._book(record, summary)
            self._notify_email(
                record.from_email,
                ProposalAccepted(
                    timestamp=self.clock(),
                    data=ProposalAcceptedData(
                        proposal_id=record.id, by=actor.email, calendar_link=event.calendar_link
                    ),
                ),
            )
            return TransitionResult(record=record, event=event)

        self._notify_email(
            record.from_email,
            ProposalDeclined(timestamp=self.clock(), data=ProposalDeclinedData(proposal_id=record.id, by=actor.email)),
        )
        return TransitionResult(record=record)

    # -------------------- Signed payloads from other agents --------------------
    def accept_signed(self, actor: UserRecord, payload: Union[str, SignedProposal]) -> TransitionResult:
        """Verify a proposal received out of band, consume its nonce and accept it."""
        signed = self._ingest(actor, payload)
        record = self._record(signed, self._local_sender_id(signed), None, self.clock())
        self.store.insert_proposal(record)
        return self._decide(actor, record, ProposalStatus.ACCEPTED)

    def receive(self, actor: UserRecord, payload: Union[str, SignedProposal]) -> ProposalRecord:
        """Verify a proposal received out of band and file it as pending in the actor's inbox."""
        signed = self._ingest(actor, payload)
        record = self._record(signed, self._local_sender_id(signed), None, self.clock())
        self.store.insert_proposal(record)
        logger.info("proposal %s received from %s", record.id, record.from_email)
        self._notify_email(record.to_email, self._received_event(record))
        return record

    def check(self, payload: Union[str, SignedProposal]) -> VerifyOut:
        """Side-effect free signature check for the public verify endpoint."""
        signed = None
        try:
            signed = decode_signed_proposal(payload)
            self._verify_signature(signed)
        except MeetdError as e:
            return VerifyOut(valid=False, proposal=signed, error=e.message)
        return VerifyOut(valid=True, proposal=signed)

    def _ingest(self, actor: UserRecord, payload: Union[str, SignedProposal]) -> SignedProposal:
        signed = decode_signed_proposal(payload)
        if signed.to_email != actor.email:
            raise Forbidden("Proposal is not addressed to you")
        self._verify_signature(signed)
        _check_slot(signed.slot.start, signed.slot.duration_minutes)
        now = self.clock()
        if signed.expires_at <= now:
            raise InvalidTransition("Proposal has expired")
        self._check_lifetime(signed.expires_at, now)
        self.replay.record_if_new(signed.nonce, now)
        return signed

    def _verify_signature(self, signed: SignedProposal) -> None:
        if signed.version != PROPOSAL_VERSION:
            raise MalformedProposal(f"Unsupported proposal version {signed.version}")
        if not verify_proposal(signed):
            self._reject(signed, "Invalid signature")
        published = self.directory.published_key(signed.from_email)
        if published is not None and published != signed.from_pubkey:
            self._reject(signed, "Signing key does not match the sender's published key")

    def _reject(self, signed: SignedProposal, reason: str) -> None:
        logger.warning(
            "signature rejected: %s",
            reason,
            extra={"claimed_sender": signed.from_email, "nonce": signed.nonce},
        )
        raise SignatureInvalid(reason)

    def _local_sender_id(self, signed: SignedProposal) -> Optional[str]:
        sender = self.store.get_user_by_email(normalize_email(signed.from_email))
        return sender.id if sender else None

    # -------------------- Expiry --------------------
    def sweep(self) -> int:
        now = self.clock()
        expired = sum(1 for record in self.store.due_proposals(now) if self._expire(record))
        self.replay.prune(now)
        if expired:
            logger.info("expired %d proposals", expired)
        return expired

    def _settle(self, record: ProposalRecord) -> ProposalRecord:
        if not record.is_due(self.clock()):
            return record
        self._expire(record)
        return self._load(record.id)

    def _expire(self, record: ProposalRecord) -> bool:
        if not self.store.transition_proposal(record.id, ProposalStatus.PENDING, ProposalStatus.EXPIRED):
            return False
        event = ProposalExpired(
            timestamp=self.clock(),
            data=ProposalExpiredData(proposal_id=record.id, from_email=record.from_email, to_email=record.to_email),
        )
        self._notify_email(record.from_email, event)
        self._notify_email(record.to_email, event)
        return True

    # -------------------- Helpers --------------------
    def _load(self, proposal_id: str) -> ProposalRecord:
        record = self.store.get_proposal(proposal_id)
        if record is None:
            raise NotFound("Proposal not found")
        return record

    def _check_lifetime(self, expires_at: datetime, now: datetime) -> None:
        if expires_at <= now:
            raise InvalidSlot("expires_at must be in the future")
        if expires_at > now + self.max_lifetime:
            raise InvalidSlot("expires_at exceeds the maximum proposal lifetime")

    def _record(
        self, signed: SignedProposal, from_user_id: Optional[str], description: Optional[str], now: datetime
    ) -> ProposalRecord:
        return ProposalRecord(
            id=new_proposal_id(),
            from_user_id=from_user_id,
            from_email=signed.from_email,
            from_pubkey=signed.from_pubkey,
            to_email=signed.to_email,
            slot_start=signed.slot.start,
            duration_minutes=signed.slot.duration_minutes,
            title=signed.title,
            description=description,
            nonce=signed.nonce,
            expires_at=signed.expires_at,
            signature=signed.signature,
            status=ProposalStatus.PENDING,
            created_at=now,
        )

    def _received_event(self, record: ProposalRecord) -> ProposalReceived:
        return ProposalReceived(
            timestamp=self.clock(),
            data=ProposalReceivedData(
                proposal_id=record.id,
                from_email=record.from_email,
                from_pubkey=record.from_pubkey,
                to_email=record.to_email,
                slot=ProposalSlot(start=record.slot_start, duration_minutes=record.duration_minutes),
                title=record.title,
                expires_at=record.expires_at,
                signature=record.signature,
            ),
        )

    def _event_summary(self, record: ProposalRecord) -> Optional[CalendarEventOut]:
        if record.status is not ProposalStatus.ACCEPTED:
            return None
        return CalendarEventOut(title=record.title or DEFAULT_TITLE, start=record.slot_start, end=record.slot_end)

    def _book(self, record: ProposalRecord, summary: CalendarEventOut) -> CalendarEventOut:
        """Calendar side effect of the first accept. Failures are logged, never undo the accept."""
        recipient = self.store.get_user_by_email(record.to_email)
        sender = self.store.get_user(record.from_user_id) if record.from_user_id else None
        link = None
        for owner, attendee in ((recipient, record.from_email), (sender, record.to_email)):
            if owner is None:
                continue
            try:
                created = self.calendar.create_event(
                    owner, summary.title, record.description, summary.start, summary.end, attendee
                )
            except Exception:
                logger.exception("calendar event for proposal %s failed for user %s", record.id, owner.id)
                continue
            if owner is recipient:
                link = created.html_link
        return summary.model_copy(update={"calendar_link": link})

    def _notify_email(self, email: str, event: BaseModel) -> None:
        try:
            user = self.store.get_user_by_email(email)
            if user is not None:
                self.notifier.notify(user, event)
        except Exception:
            logger.exception("notification %s for %s failed", getattr(event, "event", "?"), email)
