from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware

from .calendar import CalendarProvider
from .config import Settings
from .keys import KeyCustody
from .models import UserRecord
from .proposals import ProposalEngine
from .replay import ReplayGuard
from .security import extract_bearer
from .storage import Store
from .webhooks import WebhookNotifier
from .websocket import InboxStream


def setup_cors(app: FastAPI, origins: List[str]):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@dataclass
class Services:
    settings: Settings
    store: Store
    custody: KeyCustody
    replay: ReplayGuard
    calendar: CalendarProvider
    webhooks: WebhookNotifier
    stream: InboxStream
    engine: ProposalEngine


def get_services(request: Request) -> Services:
    return request.app.state.services


# -------------------- Auth helper (Authorization: Bearer <api key>) --------------------
def current_user(
    Authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> UserRecord:
    token = extract_bearer(Authorization)
    return services.custody.authenticate(token)
