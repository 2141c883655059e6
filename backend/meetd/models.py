from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
)

PROPOSAL_VERSION = 1
# Longest meeting a proposal or availability query may ask for: one week.
MAX_DURATION_MINUTES = 7 * 24 * 60
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("timestamp must include a UTC offset")
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return utc(value).strftime(TIMESTAMP_FORMAT)


def _second_precision(value: datetime) -> datetime:
    value = utc(value)
    if value.microsecond:
        raise ValueError("timestamp must have second precision")
    return value


# Timestamps that take part in a signature: UTC, whole seconds, rendered with "Z".
SignedTimestamp = Annotated[
    datetime,
    AfterValidator(_second_precision),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]

Timestamp = Annotated[
    datetime,
    AfterValidator(utc),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]


class Visibility(str, Enum):
    BUSY_ONLY = "busy_only"
    MASKED = "masked"
    FULL = "full"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


# ---------- Secrets ----------
class Sealed(BaseModel):
    """Ciphertext of a secret at rest. Only a Sealer can open it."""

    model_config = ConfigDict(frozen=True)

    ciphertext: str

    def __repr__(self) -> str:
        return "Sealed(<redacted>)"

    __str__ = __repr__


# ---------- Users ----------
class UserRecord(BaseModel):
    id: str
    email: str
    encrypted_refresh_token: Optional[Sealed] = Field(default=None, repr=False)
    public_key: str
    encrypted_private_key: Sealed = Field(repr=False)
    credential_hash: str = Field(repr=False)
    visibility: Visibility = Visibility.BUSY_ONLY
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(default=None, repr=False)
    created_at: Timestamp


class RegisterIn(BaseModel):
    email: EmailStr


class RegisterOut(BaseModel):
    user_id: str
    email: str
    public_key: str
    api_key: str


class RotateKeyOut(BaseModel):
    api_key: str


class PubkeyOut(BaseModel):
    email: str
    public_key: str


# ---------- Config ----------
class ConfigOut(BaseModel):
    visibility: Visibility
    webhook_url: Optional[str] = None
    public_key: str


class ConfigUpdateIn(BaseModel):
    visibility: Optional[Visibility] = None
    # "" removes the webhook
    webhook_url: Optional[str] = None


class ConfigUpdateOut(BaseModel):
    visibility: Visibility
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


class WebhookIn(BaseModel):
    url: AnyHttpUrl


class WebhookOut(BaseModel):
    url: str
    secret: str


class WebhookTestOut(BaseModel):
    success: bool
    error: Optional[str] = None


# ---------- Calendar ----------
class TimeSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: Timestamp
    end: Timestamp


class BusyPeriod(TimeSlot):
    title: Optional[str] = None


class ScoredSlot(TimeSlot):
    score: float


class AvailabilityIn(BaseModel):
    with_email: EmailStr
    duration_minutes: int
    window_start: Timestamp
    window_end: Timestamp
    timezone: Optional[str] = None
    granularity_minutes: Optional[int] = None


class AvailabilityOut(BaseModel):
    slots: List[ScoredSlot]
    their_busy: List[BusyPeriod] = []


class CalendarEventOut(BaseModel):
    title: str
    start: Timestamp
    end: Timestamp
    calendar_link: Optional[str] = None


# ---------- Proposals ----------
class ProposalSlot(BaseModel):
    start: SignedTimestamp
    duration_minutes: int


class SignedProposal(BaseModel):
    """Wire form exchanged between agents; ``signature`` covers the canonical payload."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = PROPOSAL_VERSION
    from_email: str = Field(alias="from")
    from_pubkey: str
    to_email: str = Field(alias="to")
    slot: ProposalSlot
    title: Optional[str] = None
    nonce: str
    expires_at: SignedTimestamp
    signature: str = ""

    def wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ProposalRecord(BaseModel):
    id: str
    from_user_id: Optional[str] = None
    from_email: str
    from_pubkey: str
    to_email: str
    slot_start: Timestamp
    duration_minutes: int
    title: Optional[str] = None
    description: Optional[str] = None
    nonce: str
    expires_at: Timestamp
    signature: str
    status: ProposalStatus = ProposalStatus.PENDING
    created_at: Timestamp

    @property
    def slot_end(self) -> datetime:
        return self.slot_start + timedelta(minutes=self.duration_minutes)

    def is_due(self, now: datetime) -> bool:
        return self.status is ProposalStatus.PENDING and self.expires_at <= now


class InboxProposal(BaseModel):
    id: str
    from_email: str = Field(serialization_alias="from")
    to_email: str = Field(serialization_alias="to")
    slot: ProposalSlot
    title: Optional[str] = None
    description: Optional[str] = None
    expires_at: Timestamp
    status: ProposalStatus

    @classmethod
    def from_record(cls, p: ProposalRecord) -> "InboxProposal":
        return cls(
            id=p.id,
            from_email=p.from_email,
            to_email=p.to_email,
            slot=ProposalSlot(start=p.slot_start, duration_minutes=p.duration_minutes),
            title=p.title,
            description=p.description,
            expires_at=p.expires_at,
            status=p.status,
        )


class ProposalList(BaseModel):
    proposals: List[InboxProposal]


class CreateProposalIn(BaseModel):
    to_email: EmailStr
    slot_start: Timestamp
    duration_minutes: int
    title: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[Timestamp] = None


class CreateProposalOut(BaseModel):
    proposal_id: str
    signed_proposal: str
    accept_link: str
    proposal: SignedProposal


class SignedProposalIn(BaseModel):
    # Either the base64 transport string or the JSON wire object
    signed_proposal: Union[str, SignedProposal]


class ReceiveProposalIn(SignedProposalIn):
    action: Optional[Literal["accept"]] = None


class VerifyOut(BaseModel):
    valid: bool
    proposal: Optional[SignedProposal] = None
    error: Optional[str] = None


class TransitionOut(BaseModel):
    proposal_id: str
    status: ProposalStatus
    event: Optional[CalendarEventOut] = None
