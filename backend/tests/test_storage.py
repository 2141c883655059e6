"""Stores: SQLite persistence mapping and conditional transitions."""

from datetime import timedelta

import pytest

from meetd.errors import Conflict
from meetd.keys import KeyCustody
from meetd.models import ProposalRecord, ProposalStatus, Visibility
from meetd.storage import MemoryStore, SqliteStore

from .conftest import EXPIRES, NOW, SLOT


@pytest.fixture
def db(tmp_path):
    store = SqliteStore(str(tmp_path / "meetd.db"))
    yield store
    store.close()


@pytest.fixture
def sql_custody(db, sealer, clock):
    return KeyCustody(db, sealer, hash_strength="min", clock=clock)


def _proposal(pid="prop_000000000001", nonce="nonce-1", **overrides) -> ProposalRecord:
    fields = dict(
        id=pid,
        from_user_id=None,
        from_email="remote@elsewhere.example",
        from_pubkey="pk",
        to_email="bob@example.com",
        slot_start=SLOT,
        duration_minutes=45,
        title="Intro",
        nonce=nonce,
        expires_at=EXPIRES,
        signature="sig",
        created_at=NOW,
    )
    fields.update(overrides)
    return ProposalRecord(**fields)


class TestUsers:
    def test_user_round_trip_keeps_sealed_fields(self, db, sql_custody):
        user, _ = sql_custody.provision("alice@example.com", refresh_token="rt-1")
        loaded = db.get_user(user.id)
        assert loaded == user
        assert db.get_user_by_email("alice@example.com").id == user.id
        assert sql_custody.refresh_token(loaded) == "rt-1"

    def test_duplicate_email_conflicts(self, sql_custody):
        sql_custody.provision("alice@example.com")
        with pytest.raises(Conflict):
            sql_custody.provision("ALICE@example.com")

    def test_update_user(self, db, sql_custody):
        user, _ = sql_custody.provision("alice@example.com")
        sql_custody.update_visibility(user, Visibility.FULL)
        assert db.get_user(user.id).visibility is Visibility.FULL


class TestProposals:
    def test_remote_sender_round_trip(self, db):
        record = _proposal()
        db.insert_proposal(record)
        assert db.get_proposal(record.id) == record
        assert db.proposals_to("bob@example.com") == [record]
        assert db.proposals_from("remote@elsewhere.example") == [record]
        assert db.proposals_to("bob@example.com", ProposalStatus.ACCEPTED) == []

    def test_duplicate_nonce_conflicts(self, db):
        db.insert_proposal(_proposal())
        with pytest.raises(Conflict):
            db.insert_proposal(_proposal(pid="prop_000000000002"))

    def test_transition_only_from_source(self, db):
        db.insert_proposal(_proposal())
        pid = "prop_000000000001"
        assert db.transition_proposal(pid, ProposalStatus.PENDING, ProposalStatus.ACCEPTED)
        assert not db.transition_proposal(pid, ProposalStatus.PENDING, ProposalStatus.DECLINED)
        assert db.get_proposal(pid).status is ProposalStatus.ACCEPTED
        assert not db.transition_proposal("prop_missing", ProposalStatus.PENDING, ProposalStatus.EXPIRED)

    def test_decision_requires_unexpired_proposal(self, db):
        db.insert_proposal(_proposal())
        pid = "prop_000000000001"
        assert not db.transition_proposal(pid, ProposalStatus.PENDING, ProposalStatus.ACCEPTED, unexpired_at=EXPIRES)
        assert db.get_proposal(pid).status is ProposalStatus.PENDING
        assert db.transition_proposal(
            pid, ProposalStatus.PENDING, ProposalStatus.ACCEPTED, unexpired_at=EXPIRES - timedelta(seconds=1)
        )

    def test_memory_store_applies_the_same_deadline(self):
        store = MemoryStore()
        store.insert_proposal(_proposal())
        pid = "prop_000000000001"
        assert not store.transition_proposal(pid, ProposalStatus.PENDING, ProposalStatus.DECLINED, unexpired_at=EXPIRES)
        assert store.transition_proposal(pid, ProposalStatus.PENDING, ProposalStatus.EXPIRED)

    def test_due_proposals(self, db):
        db.insert_proposal(_proposal())
        db.insert_proposal(_proposal(pid="prop_000000000002", nonce="n-2", expires_at=EXPIRES + timedelta(days=1)))
        due = db.due_proposals(EXPIRES)
        assert [p.id for p in due] == ["prop_000000000001"]

    def test_nonces(self, db):
        assert db.record_nonce_if_new("n", NOW)
        assert not db.record_nonce_if_new("n", NOW)
        assert db.prune_nonces(NOW + timedelta(seconds=1)) == 1
        assert db.record_nonce_if_new("n", NOW)
