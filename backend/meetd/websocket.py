# backend/meetd/websocket.py
import asyncio
import logging
import threading
from typing import Dict

from fastapi import WebSocket
from pydantic import BaseModel

from .models import UserRecord

logger = logging.getLogger(__name__)


class InboxStream:
    """Live inbox push, keyed by user email.

    ``notify`` may be called from any thread; each send is scheduled on the
    event loop that accepted the socket.
    """

    def __init__(self) -> None:
        self._by_email: Dict[str, Dict[WebSocket, asyncio.AbstractEventLoop]] = {}
        self._lock = threading.Lock()

    async def connect(self, email: str, ws: WebSocket) -> None:
        # ws.accept() is done by the route
        loop = asyncio.get_running_loop()
        with self._lock:
            self._by_email.setdefault(email, {})[ws] = loop

    async def disconnect(self, email: str, ws: WebSocket) -> None:
        with self._lock:
            conns = self._by_email.get(email)
            if conns is not None:
                conns.pop(ws, None)
                if not conns:
                    self._by_email.pop(email, None)

    async def _send(self, email: str, ws: WebSocket, data) -> None:
        try:
            await ws.send_json(data)
        except Exception:
            logger.debug("dropping dead inbox socket for %s", email)
            await self.disconnect(email, ws)

    def notify(self, user: UserRecord, event: BaseModel) -> None:
        if getattr(event, "event", None) != "proposal.received":
            return
        with self._lock:
            conns = list(self._by_email.get(user.email, {}).items())
        if not conns:
            return
        message = {"type": "proposal", "data": event.model_dump(mode="json", by_alias=True)}
        for ws, loop in conns:
            if not loop.is_closed():
                asyncio.run_coroutine_threadsafe(self._send(user.email, ws, message), loop)
