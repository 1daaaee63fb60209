import itertools
from datetime import timedelta
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from erp_sync.api.main import create_app
from erp_sync.config import Settings
from erp_sync.container import build_services
from erp_sync.infrastructure.db import Base, make_session_factory
from erp_sync.models import tables  # noqa: F401
from erp_sync.models.tables import utcnow
from erp_sync.sync.alerts import AlertService
from erp_sync.sync.content_hash import checksum_of

ADMIN_KEY = "admin-secret-key"
AGENT_SECRET = "outbound-agent-secret"
AGENT_TOKEN = "agent-token-0123456789"
AGENT_URL = "http://agent.v1.test"


class FakeClock:
    """Drives both wall time (``now``) and breaker/cache time (``monotonic``)."""

    def __init__(self):
        self.current = utcnow()
        self.mono = 1000.0

    def now(self):
        return self.current

    def monotonic(self):
        return self.mono

    def tick(self, seconds):
        self.current += timedelta(seconds=seconds)
        self.mono += seconds


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.text = "" if body is None else str(body)
        self.content = b"" if body is None else b"x"

    def json(self):
        return self._body


class FakeHttp:
    """Stand-in for ``requests.Session``: records posts and routes them by URL suffix."""

    def __init__(self):
        self.calls = []
        self.routes = {}

    def route(self, suffix, handler):
        self.routes[suffix] = handler

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        for suffix, handler in self.routes.items():
            if url.endswith(suffix):
                result = handler(json)
                if isinstance(result, Exception):
                    raise result
                if isinstance(result, FakeResponse):
                    return result
                return FakeResponse(200, result)
        return FakeResponse(200, {"ok": True})

    def calls_to(self, suffix):
        return [c for c in self.calls if c["url"].endswith(suffix)]


class FakeErp:
    """Simulated ERP behind the agent: answers checksum and item range queries."""

    def __init__(self, items):
        self.items = {i["sku"]: i for i in items}

    def _in_range(self, payload):
        start, end = payload.get("rangeStart"), payload.get("rangeEnd")
        return [
            i for sku, i in sorted(self.items.items())
            if (start is None or sku >= start) and (end is None or sku < end)
        ]

    def checksum(self, payload):
        rows = self._in_range(payload)
        return {"checksum": checksum_of((i["sku"], i["contentHash"]) for i in rows), "itemCount": len(rows)}

    def items_in_range(self, payload):
        return {"items": self._in_range(payload)}


def make_item(sku, content_hash="h1", **extra):
    item = {"sku": sku, "name": f"Item {sku}", "erpUnitCode": "KG", "erpVatCode": "TVA20",
            "contentHash": content_hash}
    item.update(extra)
    return item


class FakeSlackResponse:
    def __init__(self, status_code=200, body="ok"):
        self.status_code = status_code
        self.body = body


class FakeSlack:
    """Stand-in for ``slack_sdk.webhook.WebhookClient``."""

    def __init__(self):
        self.messages = []
        self.error = None

    def send(self, text=None, **kwargs):
        if self.error is not None:
            raise self.error
        self.messages.append(text)
        return FakeSlackResponse()


class RecordingEnqueue:
    def __init__(self):
        self.messages = []
        self._ids = itertools.count(1)
        self.fail = False

    def __call__(self, message):
        if self.fail:
            raise ConnectionError("broker down")
        self.messages.append(message)
        return f"task-{next(self._ids)}"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def enqueue():
    return RecordingEnqueue()


@pytest.fixture
def settings():
    return Settings(
        api_secret=ADMIN_KEY,
        agent_secret=AGENT_SECRET,
        slack_webhook_url="https://hooks.slack.test/services/T000/B000",
        agent_token_rounds=4,
    )


@pytest.fixture
def slack():
    return FakeSlack()


@pytest.fixture
def services(session_factory, settings, http, enqueue, slack, clock):
    return build_services(
        session_factory=session_factory,
        settings=settings,
        http=http,
        enqueue=enqueue,
        alerts=AlertService(settings.slack_webhook_url, client=slack),
        clock=clock.monotonic,
        now=clock.now,
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


@pytest.fixture
def agent(services):
    """Vendor V1 registered with KG/TVA20 mappings in place."""
    services.registry.register("V1", AGENT_URL, "ebp", AGENT_TOKEN, "1.0.0")
    services.mappings.seed_mappings("V1", [
        {"mapping_type": "unit", "erp_code": "KG", "resto_code": "kilogram", "resto_label": "Kilogram"},
        {"mapping_type": "vat", "erp_code": "TVA20", "resto_code": "vat_20", "resto_label": "20"},
    ])
    return "V1"


@pytest.fixture
def agent_headers():
    return {"Authorization": f"Bearer {AGENT_TOKEN}"}


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}
