"""
Pytest configuration and shared fixtures.

Phones are simulated by FakePhone, an httpx.MockTransport handler that
decrypts requests and encrypts replies with the real SM4 codec.
"""
import json
import os
import sys
from typing import Any, Callable, Dict, Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SM_POLLER_ENABLED", "false")

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db, Device
from main import app, get_session_factory, get_phone_client_factory
from phone_client import PhoneClient
from sm4_codec import encrypt_hex, decrypt_hex
from sync_service import SyncService

TEST_KEY = "0123456789abcdef0123456789abcdef"


class FakePhone:
    """
    In-memory SmsForwarder agent.

    sms_pages and call_pages map a type filter to a list of pages (lists of
    item dicts); a page number past the end returns an empty page.
    handlers can override any endpoint with fn(data) -> (code, msg, data).
    """

    def __init__(self, key: str = TEST_KEY):
        self.key = key
        self.requests: list[Dict[str, Any]] = []
        self.sms_pages: Dict[int, list] = {}
        self.call_pages: Dict[int, list] = {}
        self.contacts: list = []
        self.config: Dict[str, Any] = {
            "enable_api_battery_query": False,
            "extra_device_mark": "Pixel 7",
            "extra_sim1": "CMCC_+8613800000001",
            "extra_sim2": "",
        }
        self.battery: Dict[str, Any] = {"level": "85%", "status": "Charging", "plugged": "AC"}
        self.location: Dict[str, Any] = {"address": "Main St", "latitude": 31.2, "longitude": 121.5}
        self.clone_config: Dict[str, Any] = {"version_code": 100, "settings": {"enable_sms": True}}
        self.handlers: Dict[str, Callable[[Any], tuple]] = {}
        self.fail_with: Exception | None = None
        self.transport = httpx.MockTransport(self._handle)

    def calls_to(self, uri: str) -> list:
        return [r for r in self.requests if r["uri"] == uri]

    def _page(self, pages: Dict[int, list], data: Dict[str, Any]) -> list:
        page_list = pages.get(data.get("type", 0), [])
        index = data.get("page_num", 1) - 1
        return page_list[index] if 0 <= index < len(page_list) else []

    def _dispatch(self, uri: str, data: Any) -> tuple:
        if uri in self.handlers:
            return self.handlers[uri](data)
        if uri == "/sms/query":
            return 200, "success", self._page(self.sms_pages, data)
        if uri == "/call/query":
            return 200, "success", self._page(self.call_pages, data)
        if uri == "/contact/query":
            return 200, "success", self.contacts
        if uri == "/config/query":
            return 200, "success", self.config
        if uri == "/battery/query":
            return 200, "success", self.battery
        if uri == "/location/query":
            return 200, "success", self.location
        if uri == "/clone/pull":
            return 200, "success", self.clone_config
        return 200, "success", None

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with

        envelope = json.loads(decrypt_hex(self.key, request.content.decode()))
        uri = request.url.path
        self.requests.append({
            "uri": uri,
            "data": envelope["data"],
            "envelope": envelope,
            "content_type": request.headers.get("content-type"),
        })

        code, msg, data = self._dispatch(uri, envelope["data"])
        reply = json.dumps({"code": code, "msg": msg, "data": data, "timestamp": 1700000000000})
        return httpx.Response(200, text=encrypt_hex(self.key, reply.encode()))


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Session factory over a clean in-memory SQLite database per test.
    StaticPool keeps one connection so sessions opened in worker threads
    see the same data.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def fake_phone() -> FakePhone:
    return FakePhone()


@pytest.fixture(scope="function")
def client_factory(fake_phone: FakePhone) -> Callable[..., PhoneClient]:
    def factory(device, **kwargs):
        return PhoneClient(device, transport=fake_phone.transport, **kwargs)
    return factory


@pytest.fixture(scope="function")
def test_device(test_db: Session) -> Device:
    device = Device(
        name="Test Phone",
        phone_addr="http://phone.test:5000",
        sm4_key=TEST_KEY,
    )
    test_db.add(device)
    test_db.commit()
    test_db.refresh(device)
    return device


@pytest.fixture(scope="function")
def sync_service(session_factory, client_factory) -> SyncService:
    return SyncService(session_factory=session_factory, client_factory=client_factory, page_size=50, max_pages=100)


@pytest.fixture(scope="function")
def client(test_db: Session, session_factory, client_factory) -> Generator[TestClient, None, None]:
    """
    Create a test client with dependency overrides.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_phone_client_factory] = lambda: client_factory

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_key() -> Dict[str, str]:
    """
    Return admin key headers.
    """
    return {"X-Admin": os.getenv("ADMIN_KEY") or "admin"}


@pytest.fixture(scope="function")
def dispatched(monkeypatch) -> list:
    """
    Record background dispatches instead of running them; TestClient tears
    down its event loop after each request.
    """
    calls = []

    from background_tasks import background_tasks

    def record_dispatch(label, func, *args, **kwargs):
        calls.append({"label": label, "func": func, "args": args, "kwargs": kwargs})

    def record_dispatch_once(key, label, func, *args, **kwargs):
        calls.append({"key": key, "label": label, "func": func, "args": args, "kwargs": kwargs})

    monkeypatch.setattr(background_tasks, "dispatch", record_dispatch)
    monkeypatch.setattr(background_tasks, "dispatch_once", record_dispatch_once)
    return calls


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs


@pytest.fixture(scope="function")
def capture_metrics(monkeypatch):
    """
    Capture metrics emitted during tests.
    """
    metrics_data = {
        "counters": [],
        "histograms": []
    }

    from observability import MetricsCollector

    original_inc_counter = MetricsCollector.inc_counter
    original_observe_histogram = MetricsCollector.observe_histogram

    def capture_counter(self, metric_name: str, labels=None, value: int = 1):
        metrics_data["counters"].append({
            "name": metric_name,
            "labels": labels or {},
            "value": value
        })
        original_inc_counter(self, metric_name, labels, value)

    def capture_histogram(self, metric_name: str, value: float, labels=None):
        metrics_data["histograms"].append({
            "name": metric_name,
            "value": value,
            "labels": labels or {}
        })
        original_observe_histogram(self, metric_name, value, labels)

    monkeypatch.setattr(MetricsCollector, "inc_counter", capture_counter)
    monkeypatch.setattr(MetricsCollector, "observe_histogram", capture_histogram)

    return metrics_data
