import os
import random
import tempfile

import pytest

# server.py reads its configuration at import time
_TMP = tempfile.mkdtemp(prefix="tackletarts-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("MOCK_SECRET", "test-secret")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "letmein")
os.environ.setdefault("LOCK_BACKEND", "local")
os.environ.setdefault("MOCK_WEBHOOK_URL", "http://testserver/payments/webhook")

from tackletarts.infra.sql import create_schema, make_async_engine  # noqa: E402
from tackletarts.model.allocator import TicketNumberAllocator  # noqa: E402
from tackletarts.model.db import Base  # noqa: E402
from tackletarts.model.ledger import CompetitionLedger  # noqa: E402
from tackletarts.model.locks import new_locks  # noqa: E402
from tackletarts.model.reconciliation import PaymentReconciler  # noqa: E402


@pytest.fixture
async def db(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/ledger.db"
    )
    await create_schema(engine, Base.metadata)
    try:
        yield SessionAsync, gated
    finally:
        await engine.dispose()


@pytest.fixture
def locks():
    return new_locks(timeout_seconds=5.0)


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
async def make_ledger(db, locks, rng):
    """Ledger factory; each call gets its own session like one request."""
    SessionAsync, gated = db
    sessions = []

    def factory(**kw):
        session = SessionAsync()
        sessions.append(session)
        kw.setdefault("allocator", TicketNumberAllocator(rng=rng))
        kw.setdefault("rng", rng)
        return CompetitionLedger(session, gated, locks, **kw)

    yield factory
    for session in sessions:
        await session.close()


@pytest.fixture
def ledger(make_ledger):
    return make_ledger()


@pytest.fixture
def make_reconciler(make_ledger):
    def factory():
        return PaymentReconciler(make_ledger())
    return factory
