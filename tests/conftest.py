import contextlib
import itertools
import os
import tempfile
import uuid
from datetime import timedelta

# Configure the app before any coinclash module reads its settings
_TEST_DIR = tempfile.mkdtemp(prefix="coinclash-tests-")
os.environ["DB_PATH"] = os.path.join(_TEST_DIR, "coinclash.db")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest

from coinclash.core.database import Database, db, to_iso, utc_now
from coinclash.core.exceptions import AlreadyMatchedError
from coinclash.core.matchmaking import matchmaker
from coinclash.core.wallet import WalletLedger, wallet_ledger


def fund(database: Database, ledger: WalletLedger, user_id: int, amount: float):
    with database.transaction() as cursor:
        ledger.post(cursor, user_id, "deposit", amount, amount, also={"total_deposits": amount})


@pytest.fixture
def database(tmp_path):
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def ledger(database):
    return WalletLedger(database)


@pytest.fixture
def make_user(database, ledger):
    """Create a user with an optional starting balance in the per-test database."""
    counter = itertools.count(1)

    def _make(username=None, balance=0.0, referral_code=None):
        user = database.create_user(username or f"player{next(counter)}", referral_code=referral_code)
        if balance:
            fund(database, ledger, user["id"], balance)
        return user

    return _make


@pytest.fixture
def app_user():
    """Create a funded user in the application database."""

    def _make(balance=100.0):
        user = db.create_user(f"p{uuid.uuid4().hex[:12]}", "secret")
        if balance:
            fund(db, wallet_ledger, user["id"], balance)
        return user

    return _make



def cancel_waiting_entries():
    for entry in db.fetchall("SELECT id, user_id FROM matchmaking_queue WHERE status = 'waiting'"):
        with contextlib.suppress(AlreadyMatchedError):
            matchmaker.cancel(entry["id"], entry["user_id"])


@pytest.fixture
def clean_queue():
    """Leave no waiting entries behind for other tests to match against."""
    cancel_waiting_entries()
    yield
    cancel_waiting_entries()


@pytest.fixture
def open_round():
    """Keep the application's betting round open for the duration of a test."""
    with db.transaction() as cursor:
        cursor.execute(
            "UPDATE multiplayer_rounds SET ends_at = ? WHERE status = 'betting'",
            (to_iso(utc_now() + timedelta(seconds=120)),),
        )
    yield
