"""
Ledger helpers and the transaction wrapper.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from consensus_engine.core.config import settings
from consensus_engine.core.errors import TransientStoreFailure
from consensus_engine.db import transaction
from consensus_engine.db.transaction import run_in_transaction
from consensus_engine.models.ledger import TransactionType, XpTransaction
from consensus_engine.models.user import User
from consensus_engine.services import ledger_service
from consensus_engine.services.identity_service import link_wallet, resolve_identity


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(settings, "STORE_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(transaction.time, "sleep", lambda _: None)


class TestLedger:
    def test_reconcile_credit_appends_difference(self, db_session, make_user):
        user = make_user()
        kwargs = dict(user_id=user.id, source_id="submission:1", type=TransactionType.SUBMISSION_REWARD)

        first = ledger_service.reconcile_credit(db_session, target_amount=40, **kwargs)
        again = ledger_service.reconcile_credit(db_session, target_amount=40, **kwargs)
        lower = ledger_service.reconcile_credit(db_session, target_amount=35, **kwargs)
        db_session.commit()

        assert first.amount == 40
        assert again is None
        assert lower.amount == -5
        assert ledger_service.net_credited(db_session, user_id=user.id, source_id="submission:1") == 35
        assert db_session.query(XpTransaction).count() == 2

    def test_week_number_from_timestamp(self, db_session, make_user):
        user = make_user()
        tx = ledger_service.append_transaction(
            db_session,
            user_id=user.id,
            amount=10,
            type=TransactionType.AI_EVAL,
            created_at=datetime(2026, 1, 1, 12, tzinfo=timezone.utc),
        )
        assert tx.week_number == 1

    def test_refresh_cached_totals(self, db_session, make_user, credit):
        user = make_user()
        credit(user, 30)
        credit(user, -10, type=TransactionType.PENALTY)

        user = db_session.get(User, user.id)
        assert user.total_xp == 20
        assert user.current_week_xp == 20


class TestRunInTransaction:
    def test_commits(self, db_session, make_user):
        user = make_user()

        def work(db, amount):
            return ledger_service.append_transaction(
                db, user_id=user.id, amount=amount, type=TransactionType.AI_EVAL
            )

        run_in_transaction(db_session, work, 15)
        db_session.rollback()
        assert ledger_service.ledger_sum(db_session, user.id) == 15

    def test_rolls_back_on_error(self, db_session, make_user):
        user = make_user()

        def work(db):
            ledger_service.append_transaction(db, user_id=user.id, amount=5, type=TransactionType.AI_EVAL)
            raise ValueError("boom")

        with pytest.raises(ValueError):
            run_in_transaction(db_session, work)
        assert ledger_service.ledger_sum(db_session, user.id) == 0

    def test_retries_transient_errors(self, db_session, no_backoff):
        calls = []

        def work(db):
            calls.append(1)
            if len(calls) < 2:
                raise OperationalError("SELECT 1", {}, Exception("connection reset"))
            return "ok"

        assert run_in_transaction(db_session, work) == "ok"
        assert len(calls) == 2

    def test_gives_up(self, db_session, no_backoff):
        calls = []

        def work(db):
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        with pytest.raises(TransientStoreFailure):
            run_in_transaction(db_session, work)
        assert len(calls) == settings.STORE_RETRY_ATTEMPTS


class TestIdentity:
    def test_unlinked_wallet(self, db_session):
        identity = resolve_identity(db_session, " 0xABC ")
        assert identity.key == "wallet:0xabc"
        assert identity.user_id is None

    def test_linked_wallets(self, db_session, make_user):
        user = make_user()
        link_wallet(db_session, user_id=user.id, address="0xOne")
        link_wallet(db_session, user_id=user.id, address="0xtwo")
        db_session.commit()

        identity = resolve_identity(db_session, "0xTWO")
        assert identity.key == f"user:{user.id}"
        assert identity.wallets == frozenset({"0xone", "0xtwo"})
