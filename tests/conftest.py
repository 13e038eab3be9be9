import hashlib
import hmac
import json
import time
from collections import defaultdict

import pytest
from httpx import ASGITransport, AsyncClient

from billing_webhook.core.config import Settings
from billing_webhook.core.errors import DuplicateRecordError
from billing_webhook.db.base import Base, import_models
from billing_webhook.db.session import build_engine, build_sessionmaker
from billing_webhook.main import create_app
from billing_webhook.services.billing_store import BillingStore, KeepIfEquals, KeepIfNewer
from billing_webhook.services.retry_service import RetryPolicy

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for `payload` (t=<ts>,v1=<hmac>)."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def make_event(event_type: str, obj: dict, *, event_id: str = "evt_test_1", created: int = 1760000000) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingStore:
    """
    In-memory stand-in for BillingStore. Records every call in order and
    raises queued errors per operation (store.fail("upsert", err, ...)).
    """

    UNIQUE_KEYS = {"bnpl_transactions": "payment_id", "weekly_subscriptions": "subscription_id", "users": "id"}

    def __init__(self):
        self.rows = defaultdict(list)
        self.calls = []
        self.failures = defaultdict(list)

    def fail(self, op, *errors):
        self.failures[op].extend(errors)

    def _maybe_fail(self, op):
        if self.failures[op]:
            raise self.failures[op].pop(0)

    def writes(self):
        return [(op, table) for op, table, _ in self.calls if op in ("insert", "upsert", "update")]

    def _find(self, table, key, value):
        return next((r for r in self.rows[table] if r.get(key) == value), None)

    async def insert(self, table, record):
        self.calls.append(("insert", table, dict(record)))
        self._maybe_fail("insert")
        key = self.UNIQUE_KEYS.get(table)
        if key and record.get(key) is not None and self._find(table, key, record[key]):
            raise DuplicateRecordError(f"duplicate {key}", table=table)
        self.rows[table].append(dict(record))

    async def upsert(self, table, record, conflict_key, *, guards=()):
        self.calls.append(("upsert", table, dict(record)))
        self._maybe_fail("upsert")
        existing = self._find(table, conflict_key, record[conflict_key])
        if existing is None:
            self.rows[table].append(dict(record))
            return True
        for guard in guards:
            stored = existing.get(guard.column)
            if isinstance(guard, KeepIfEquals) and stored == guard.value:
                return False
            if isinstance(guard, KeepIfNewer):
                incoming = record.get(guard.column)
                if stored is not None and incoming is not None and stored > incoming:
                    return False
        existing.update(record)
        return True

    async def find_one(self, table, key, value):
        self.calls.append(("find_one", table, {key: value}))
        self._maybe_fail("find_one")
        row = self._find(table, key, value)
        return dict(row) if row else None

    async def update(self, table, key, value, values):
        self.calls.append(("update", table, {key: value, **values}))
        self._maybe_fail("update")
        matched = 0
        for row in self.rows[table]:
            if row.get(key) == value:
                row.update(values)
                matched += 1
        return matched

    async def ping(self):
        self._maybe_fail("ping")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        ENABLE_TEST_ENDPOINTS=True,
        LOG_TO_FILE=False,
    )


@pytest.fixture
async def engine(settings):
    import_models()
    engine = build_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return BillingStore(build_sessionmaker(engine))


@pytest.fixture
def memory_store():
    return RecordingStore()


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def retry(sleeps):
    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleeps)


@pytest.fixture
def sign_payload():
    return sign


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def post_event(sign_payload):
    """POST a signed event body to /webhook with the given client."""
    async def _post(client, event: dict, *, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event).encode()
        return await client.post(
            "/webhook",
            content=body,
            headers={"stripe-signature": sign_payload(body, secret), "content-type": "application/json"},
        )
    return _post


@pytest.fixture
async def client(settings, store, retry):
    app = create_app(settings, store=store, retry=retry)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
async def memory_client(settings, memory_store, retry):
    app = create_app(settings, store=memory_store, retry=retry)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
