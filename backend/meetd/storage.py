import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from .errors import Conflict, UpstreamUnavailable
from .models import ProposalRecord, ProposalStatus, Sealed, UserRecord, Visibility

logger = logging.getLogger(__name__)


class Store(Protocol):
    # Users
    def create_user(self, user: UserRecord) -> None: ...
    def get_user(self, user_id: str) -> Optional[UserRecord]: ...
    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...
    def update_user(self, user: UserRecord) -> None: ...

    # Proposals
    def insert_proposal(self, proposal: ProposalRecord) -> None: ...
    def get_proposal(self, proposal_id: str) -> Optional[ProposalRecord]: ...
    def proposals_to(self, email: str, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]: ...
    def proposals_from(self, email: str, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]: ...
    def due_proposals(self, now: datetime) -> List[ProposalRecord]: ...
    def transition_proposal(
        self,
        proposal_id: str,
        source: ProposalStatus,
        target: ProposalStatus,
        unexpired_at: Optional[datetime] = None,
    ) -> bool: ...

    # Nonces
    def record_nonce_if_new(self, nonce: str, used_at: datetime) -> bool: ...
    def prune_nonces(self, before: datetime) -> int: ...


class MemoryStore:
    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self._by_email: Dict[str, str] = {}
        self._proposals: Dict[str, ProposalRecord] = {}
        self._nonces: Dict[str, datetime] = {}
        self._lock = threading.RLock()

    # Users
    def create_user(self, user: UserRecord) -> None:
        with self._lock:
            if user.email in self._by_email or user.id in self._users:
                raise Conflict("Email is already registered")
            self._users[user.id] = user
            self._by_email[user.email] = user.id

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            user_id = self._by_email.get(email)
            return self._users.get(user_id) if user_id else None

    def update_user(self, user: UserRecord) -> None:
        with self._lock:
            if user.id not in self._users:
                raise KeyError(user.id)
            self._users[user.id] = user

    # Proposals
    def insert_proposal(self, proposal: ProposalRecord) -> None:
        with self._lock:
            if proposal.id in self._proposals:
                raise Conflict("Proposal already exists")
            self._proposals[proposal.id] = proposal

    def get_proposal(self, proposal_id: str) -> Optional[ProposalRecord]:
        with self._lock:
            return self._proposals.get(proposal_id)

    def _select(self, predicate) -> List[ProposalRecord]:
        with self._lock:
            found = [p for p in self._proposals.values() if predicate(p)]
        return sorted(found, key=lambda p: (p.created_at, p.id), reverse=True)

    def proposals_to(self, email: str, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]:
        return self._select(lambda p: p.to_email == email and (status is None or p.status is status))

    def proposals_from(self, email: str, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]:
        return self._select(lambda p: p.from_email == email and (status is None or p.status is status))

    def due_proposals(self, now: datetime) -> List[ProposalRecord]:
        return self._select(lambda p: p.is_due(now))

    def transition_proposal(
        self,
        proposal_id: str,
        source: ProposalStatus,
        target: ProposalStatus,
        unexpired_at: Optional[datetime] = None,
    ) -> bool:
        """Move a proposal from source to target if it is still in source.

        With ``unexpired_at`` the move also requires ``expires_at`` to be later.
        """
        with self._lock:
            current = self._proposals.get(proposal_id)
            if current is None or current.status is not source:
                return False
            if unexpired_at is not None and current.expires_at <= unexpired_at:
                return False
            self._proposals[proposal_id] = current.model_copy(update={"status": target})
            return True

    # Nonces
    def record_nonce_if_new(self, nonce: str, used_at: datetime) -> bool:
        with self._lock:
            if nonce in self._nonces:
                return False
            self._nonces[nonce] = used_at
            return True

    def prune_nonces(self, before: datetime) -> int:
        with self._lock:
            stale = [n for n, used_at in self._nonces.items() if used_at < before]
            for n in stale:
                del self._nonces[n]
            return len(stale)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    encrypted_refresh_token TEXT,
    public_key TEXT NOT NULL,
    encrypted_private_key TEXT NOT NULL,
    credential_hash TEXT NOT NULL,
    visibility TEXT NOT NULL DEFAULT 'busy_only',
    webhook_url TEXT,
    webhook_secret TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    from_user_id TEXT REFERENCES users(id),
    from_email TEXT NOT NULL,
    from_pubkey TEXT NOT NULL,
    to_email TEXT NOT NULL,
    slot_start INTEGER NOT NULL,
    duration_minutes INTEGER NOT NULL,
    title TEXT,
    description TEXT,
    nonce TEXT UNIQUE NOT NULL,
    expires_at INTEGER NOT NULL,
    signature TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_proposals_to_email ON proposals(to_email);
CREATE INDEX IF NOT EXISTS idx_proposals_from_user ON proposals(from_user_id);
CREATE INDEX IF NOT EXISTS idx_proposals_from_email ON proposals(from_email);
CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);

CREATE TABLE IF NOT EXISTS used_nonces (
    nonce TEXT PRIMARY KEY,
    used_at INTEGER NOT NULL
);
"""

_USER_COLUMNS = (
    "id, email, encrypted_refresh_token, public_key, encrypted_private_key, "
    "credential_hash, visibility, webhook_url, webhook_secret, created_at"
)
_PROPOSAL_COLUMNS = (
    "id, from_user_id, from_email, from_pubkey, to_email, slot_start, duration_minutes, "
    "title, description, nonce, expires_at, signature, status, created_at"
)


def _ts(value: datetime) -> int:
    return int(value.timestamp())


def _dt(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SqliteStore:
    """Relational store. Nonce and transition guarantees come from SQL constraints."""

    def __init__(self, path: str = ":memory:"):
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        except sqlite3.Error as e:
            raise UpstreamUnavailable(f"Database unavailable: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error("sqlite error: %s", e)
            raise UpstreamUnavailable(f"Database unavailable: {e}") from e

    # Users
    def _user(self, row: Optional[sqlite3.Row]) -> Optional[UserRecord]:
        if row is None:
            return None
        return UserRecord(
            id=row["id"],
            email=row["email"],
            encrypted_refresh_token=(
                Sealed(ciphertext=row["encrypted_refresh_token"]) if row["encrypted_refresh_token"] else None
            ),
            public_key=row["public_key"],
            encrypted_private_key=Sealed(ciphertext=row["encrypted_private_key"]),
            credential_hash=row["credential_hash"],
            visibility=Visibility(row["visibility"]),
            webhook_url=row["webhook_url"],
            webhook_secret=row["webhook_secret"],
            created_at=_dt(row["created_at"]),
        )

    def _user_params(self, user: UserRecord) -> tuple:
        return (
            user.email,
            user.encrypted_refresh_token.ciphertext if user.encrypted_refresh_token else None,
            user.public_key,
            user.encrypted_private_key.ciphertext,
            user.credential_hash,
            user.visibility.value,
            user.webhook_url,
            user.webhook_secret,
            _ts(user.created_at),
        )

    def create_user(self, user: UserRecord) -> None:
        with self._lock:
            try:
                self._execute(
                    f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (user.id,) + self._user_params(user),
                )
            except sqlite3.IntegrityError as e:
                raise Conflict("Email is already registered") from e

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            row = self._execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._user(row)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            row = self._execute(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,)).fetchone()
        return self._user(row)

    def update_user(self, user: UserRecord) -> None:
        with self._lock:
            cur = self._execute(
                """
                UPDATE users SET email = ?, encrypted_refresh_token = ?, public_key = ?,
                    encrypted_private_key = ?, credential_hash = ?, visibility = ?,
                    webhook_url = ?, webhook_secret = ?, created_at = ?
                WHERE id = ?
                """,
                self._user_params(user) + (user.id,),
            )
            if cur.rowcount != 1:
                raise KeyError(user.id)

    # Proposals
    def _proposal(self, row: Optional[sqlite3.Row]) -> Optional[ProposalRecord]:
        if row is None:
            return None
        return ProposalRecord(
            id=row["id"],
            from_user_id=row["from_user_id"],
            from_email=row["from_email"],
            from_pubkey=row["from_pubkey"],
            to_email=row["to_email"],
            slot_start=_dt(row["slot_start"]),
            duration_minutes=row["duration_minutes"],
            title=row["title"],
            description=row["description"],
            nonce=row["nonce"],
            expires_at=_dt(row["expires_at"]),
            signature=row["signature"],
            status=ProposalStatus(row["status"]),
            created_at=_dt(row["created_at"]),
        )

    def insert_proposal(self, proposal: ProposalRecord) -> None:
        with self._lock:
            try:
                self._execute(
                    f"INSERT INTO proposals ({_PROPOSAL_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        proposal.id,
                        proposal.from_user_id,
                        proposal.from_email,
                        proposal.from_pubkey,
                        proposal.to_email,
                        _ts(proposal.slot_start),
                        proposal.duration_minutes,
                        proposal.title,
                        proposal.description,
                        proposal.nonce,
                        _ts(proposal.expires_at),
                        proposal.signature,
                        proposal.status.value,
                        _ts(proposal.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise Conflict("Proposal already exists") from e

    def get_proposal(self, proposal_id: str) -> Optional[ProposalRecord]:
        with self._lock:
            row = self._execute(
                f"SELECT {_PROPOSAL_COLUMNS} FROM proposals WHERE id = ?", (proposal_id,)
            ).fetchone()
        return self._proposal(row)

    def _select(self, where: str, params: tuple) -> List[ProposalRecord]:
        with self._lock:
            rows = self._execute(
                f"SELECT {_PROPOSAL_COLUMNS} FROM proposals WHERE {where} ORDER BY created_at DESC, id DESC",
                params,
            ).fetchall()
        return [self._proposal(r) for r in rows]

    def proposals_to(self, email: str, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]:
        if status is None:
            return self._select("to_email = ?", (email,))
        return self._select("to_email = ? AND status = ?", (email, status.value))

    def proposals_from(self, email: str, status: Optional[ProposalStatus] = None) -> List[ProposalRecord]:
        if status is None:
            return self._select("from_email = ?", (email,))
        return self._select("from_email = ? AND status = ?", (email, status.value))

    def due_proposals(self, now: datetime) -> List[ProposalRecord]:
        return self._select("status = 'pending' AND expires_at <= ?", (_ts(now),))

    def transition_proposal(
        self,
        proposal_id: str,
        source: ProposalStatus,
        target: ProposalStatus,
        unexpired_at: Optional[datetime] = None,
    ) -> bool:
        sql = "UPDATE proposals SET status = ? WHERE id = ? AND status = ?"
        params = [target.value, proposal_id, source.value]
        if unexpired_at is not None:
            sql += " AND expires_at > ?"
            params.append(_ts(unexpired_at))
        with self._lock:
            cur = self._execute(sql, tuple(params))
            return cur.rowcount == 1

    # Nonces
    def record_nonce_if_new(self, nonce: str, used_at: datetime) -> bool:
        with self._lock:
            try:
                self._execute("INSERT INTO used_nonces (nonce, used_at) VALUES (?, ?)", (nonce, _ts(used_at)))
            except sqlite3.IntegrityError:
                return False
            return True

    def prune_nonces(self, before: datetime) -> int:
        with self._lock:
            cur = self._execute("DELETE FROM used_nonces WHERE used_at < ?", (_ts(before),))
            return cur.rowcount
