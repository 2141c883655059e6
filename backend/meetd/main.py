# backend/meetd/main.py
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .availability import ScoringPreferences, find_slots
from .calendar import CalendarProvider, NullCalendar, apply_visibility
from .config import Settings
from .deps import Services, current_user, get_services, setup_cors
from .errors import Forbidden, InvalidRequest, MeetdError
from .keys import KeyCustody, KeyDirectory
from .logging_config import configure_logging
from .models import (
    AvailabilityIn,
    AvailabilityOut,
    BusyPeriod,
    ConfigOut,
    ConfigUpdateIn,
    ConfigUpdateOut,
    CreateProposalIn,
    CreateProposalOut,
    InboxProposal,
    ProposalList,
    ProposalSlot,
    ProposalStatus,
    PubkeyOut,
    ReceiveProposalIn,
    RegisterIn,
    RegisterOut,
    RotateKeyOut,
    SignedProposalIn,
    TransitionOut,
    UserRecord,
    VerifyOut,
    WebhookIn,
    WebhookOut,
    WebhookTestOut,
    normalize_email,
)
from .proposals import ProposalEngine, TransitionResult
from .replay import ReplayGuard
from .sealing import Sealer
from .storage import MemoryStore, SqliteStore, Store
from .webhooks import FanoutNotifier, ProposalReceived, ProposalReceivedData, WebhookNotifier
from .websocket import InboxStream

logger = logging.getLogger(__name__)

router = APIRouter()
_http_url = TypeAdapter(AnyHttpUrl)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _transition_out(result: TransitionResult) -> TransitionOut:
    return TransitionOut(proposal_id=result.record.id, status=result.record.status, event=result.event)


@router.get("/health")
def health(services: Services = Depends(get_services)):
    return {"status": "ok", "ts": services.engine.clock().isoformat()}


# -------------------- Public: Register / key lookup / verify --------------------
@router.post("/auth/register", response_model=RegisterOut, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterIn, services: Services = Depends(get_services)):
    if not services.settings.allow_open_registration:
        raise Forbidden("Open registration is disabled")
    user, api_key = services.custody.provision(payload.email)
    return RegisterOut(user_id=user.id, email=user.email, public_key=user.public_key, api_key=api_key)


@router.get("/v1/agent/pubkey/{email}", response_model=PubkeyOut)
def get_pubkey(email: str, services: Services = Depends(get_services)):
    return PubkeyOut(email=normalize_email(email), public_key=services.custody.get_public_key(email))


@router.post("/v1/proposals/verify", response_model=VerifyOut, response_model_by_alias=True)
def verify_proposal(payload: SignedProposalIn, services: Services = Depends(get_services)):
    return services.engine.check(payload.signed_proposal)


# -------------------- Protected: Credentials & config --------------------
@router.post("/auth/key/rotate", response_model=RotateKeyOut)
def rotate_api_key(user: UserRecord = Depends(current_user), services: Services = Depends(get_services)):
    return RotateKeyOut(api_key=services.custody.issue_credential(user))


@router.get("/v1/config", response_model=ConfigOut)
def get_config(user: UserRecord = Depends(current_user)):
    return ConfigOut(visibility=user.visibility, webhook_url=user.webhook_url, public_key=user.public_key)


@router.patch("/v1/config", response_model=ConfigUpdateOut)
def update_config(
    payload: ConfigUpdateIn,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    custody = services.custody
    if payload.visibility is not None:
        user = custody.update_visibility(user, payload.visibility)
    if payload.webhook_url is not None:
        if payload.webhook_url == "":
            user = custody.remove_webhook(user)
        else:
            user = custody.register_webhook(user, _validate_url(payload.webhook_url))
    return ConfigUpdateOut(
        visibility=user.visibility, webhook_url=user.webhook_url, webhook_secret=user.webhook_secret
    )


def _validate_url(url: str) -> str:
    try:
        _http_url.validate_python(url)
    except ValidationError as e:
        raise InvalidRequest(f"Invalid URL: {url}") from e
    return url


@router.post("/v1/webhooks", response_model=WebhookOut)
def register_webhook(
    payload: WebhookIn,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    user = services.custody.register_webhook(user, str(payload.url))
    return WebhookOut(url=user.webhook_url, secret=user.webhook_secret)


@router.delete("/v1/webhooks")
def remove_webhook(user: UserRecord = Depends(current_user), services: Services = Depends(get_services)):
    services.custody.remove_webhook(user)
    return {"status": "removed"}


@router.post("/v1/webhooks/test", response_model=WebhookTestOut)
def send_test_webhook(user: UserRecord = Depends(current_user), services: Services = Depends(get_services)):
    if not user.webhook_url:
        raise InvalidRequest("No webhook configured")
    now = services.engine.clock().replace(microsecond=0)
    event = ProposalReceived(
        timestamp=now,
        data=ProposalReceivedData(
            proposal_id="test_proposal",
            from_email="test@meetd.example.com",
            from_pubkey=user.public_key,
            to_email=user.email,
            slot=ProposalSlot(start=now + timedelta(days=1), duration_minutes=30),
            title="Test Webhook",
            expires_at=now + timedelta(days=1),
            signature="",
        ),
    )
    success, error = services.webhooks.send_test(user, event)
    return WebhookTestOut(success=success, error=error)


# -------------------- Protected: Availability --------------------
def _busy(calendar: CalendarProvider, user: Optional[UserRecord], start: datetime, end: datetime) -> List[BusyPeriod]:
    if user is None:
        return []
    return calendar.busy_periods(user, start, end)


@router.post("/v1/availability", response_model=AvailabilityOut)
def query_availability(
    payload: AvailabilityIn,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    settings = services.settings
    target = services.store.get_user_by_email(normalize_email(payload.with_email))
    mine = _busy(services.calendar, user, payload.window_start, payload.window_end)
    theirs = _busy(services.calendar, target, payload.window_start, payload.window_end)

    prefs = ScoringPreferences(
        timezone=payload.timezone or settings.default_timezone,
        granularity_minutes=payload.granularity_minutes or settings.slot_granularity_minutes,
        work_day_start_hour=settings.work_day_start_hour,
        work_day_end_hour=settings.work_day_end_hour,
        min_lead=timedelta(minutes=settings.min_lead_minutes),
        max_lead=timedelta(days=settings.max_lead_days),
    )
    slots = find_slots(
        mine,
        theirs,
        payload.duration_minutes,
        payload.window_start,
        payload.window_end,
        now=services.engine.clock(),
        prefs=prefs,
        limit=settings.max_slots,
    )
    their_busy = apply_visibility(theirs, target.visibility) if target else []
    return AvailabilityOut(slots=slots, their_busy=their_busy)


# -------------------- Protected: Proposals --------------------
@router.post("/v1/proposals", response_model=CreateProposalOut, status_code=status.HTTP_201_CREATED)
def create_proposal(
    payload: CreateProposalIn,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    created = services.engine.create(
        user,
        payload.to_email,
        payload.slot_start,
        payload.duration_minutes,
        title=payload.title,
        description=payload.description,
        expires_at=payload.expires_at,
    )
    return CreateProposalOut(
        proposal_id=created.record.id,
        signed_proposal=created.encoded,
        accept_link=created.accept_link,
        proposal=created.signed,
    )


@router.get("/v1/proposals/sent", response_model=ProposalList)
def sent_proposals(
    status_filter: Optional[ProposalStatus] = Query(None, alias="status"),
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    records = services.engine.sent(user, status_filter)
    return ProposalList(proposals=[InboxProposal.from_record(p) for p in records])


@router.post("/v1/proposals/accept-signed", response_model=TransitionOut)
def accept_signed(
    payload: SignedProposalIn,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    return _transition_out(services.engine.accept_signed(user, payload.signed_proposal))


@router.get("/v1/proposals/{proposal_id}", response_model=InboxProposal)
def get_proposal(
    proposal_id: str,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    return InboxProposal.from_record(services.engine.get(user, proposal_id))


@router.post("/v1/proposals/{proposal_id}/accept", response_model=TransitionOut)
def accept_proposal(
    proposal_id: str,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    return _transition_out(services.engine.accept(user, proposal_id))


@router.post("/v1/proposals/{proposal_id}/decline", response_model=TransitionOut)
def decline_proposal(
    proposal_id: str,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    return _transition_out(services.engine.decline(user, proposal_id))


# -------------------- Protected: Inbox --------------------
@router.get("/v1/inbox", response_model=ProposalList)
def list_inbox(
    status_filter: Optional[ProposalStatus] = Query(None, alias="status"),
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    records = services.engine.inbox(user, status_filter)
    return ProposalList(proposals=[InboxProposal.from_record(p) for p in records])


@router.post("/v1/agent/inbox", response_model=TransitionOut)
def receive_proposal(
    payload: ReceiveProposalIn,
    user: UserRecord = Depends(current_user),
    services: Services = Depends(get_services),
):
    if payload.action == "accept":
        return _transition_out(services.engine.accept_signed(user, payload.signed_proposal))
    record = services.engine.receive(user, payload.signed_proposal)
    return TransitionOut(proposal_id=record.id, status=record.status)


# -------------------- WebSocket: /v1/inbox/ws?token=<api key> --------------------
@router.websocket("/v1/inbox/ws")
async def ws_inbox(ws: WebSocket, token: str = Query(..., description="API key")):
    services: Services = ws.app.state.services
    await ws.accept()
    try:
        user = await run_in_threadpool(services.custody.authenticate, token)
    except MeetdError:
        await ws.close(code=4401)
        return

    await services.stream.connect(user.email, ws)
    try:
        pending = await run_in_threadpool(services.engine.inbox, user, ProposalStatus.PENDING)
        await ws.send_json(
            {
                "type": "inbox.init",
                "data": [InboxProposal.from_record(p).model_dump(mode="json", by_alias=True) for p in pending],
            }
        )
        # Keepalive loop; client may send "ping" messages
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await services.stream.disconnect(user.email, ws)


# -------------------- App assembly --------------------
def build_services(
    settings: Settings,
    store: Optional[Store] = None,
    calendar: Optional[CalendarProvider] = None,
    webhooks: Optional[WebhookNotifier] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> Services:
    if store is None:
        store = MemoryStore() if settings.storage == "memory" else SqliteStore(settings.database_path)
    calendar = calendar or NullCalendar()
    lifetime = timedelta(days=settings.max_proposal_lifetime_days)
    custody = KeyCustody(
        store,
        Sealer(settings.server_secret.get_secret_value()),
        hash_strength=settings.credential_hash_strength,
        clock=clock,
    )
    replay = ReplayGuard(store, max_lifetime=lifetime)
    if webhooks is None:
        webhooks = WebhookNotifier(
            signature_header=settings.signature_header,
            max_attempts=settings.webhook_max_attempts,
            backoff_base=settings.webhook_backoff_base_seconds,
            backoff_max=settings.webhook_backoff_max_seconds,
            timeout=settings.webhook_timeout_seconds,
            workers=settings.webhook_workers,
        )
    stream = InboxStream()
    engine = ProposalEngine(
        store,
        custody,
        replay,
        FanoutNotifier([webhooks, stream]),
        calendar=calendar,
        directory=KeyDirectory(custody, settings.key_directory_url),
        public_url=settings.public_url,
        proposal_ttl=timedelta(days=settings.proposal_ttl_days),
        max_lifetime=lifetime,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        custody=custody,
        replay=replay,
        calendar=calendar,
        webhooks=webhooks,
        stream=stream,
        engine=engine,
    )


async def _sweep_forever(engine: ProposalEngine, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(engine.sweep)
        except Exception:
            logger.exception("expiry sweep failed")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MeetdError)
    async def meetd_error(request: Request, exc: MeetdError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=422, content={"error": message})


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    settings = settings or Settings()
    services = build_services(settings, **overrides)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.webhooks.start()
        sweeper = None
        if settings.sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(_sweep_forever(services.engine, settings.sweep_interval_seconds))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            services.webhooks.stop()

    app = FastAPI(title="meetd", version=__version__, lifespan=lifespan)
    app.state.services = services
    setup_cors(app, settings.cors_origins)
    install_error_handlers(app)
    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    settings = Settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
