import json
from typing import Callable, List

import httpx
import pytest

from uptimeguard.database import build_engine, build_session_factory, create_tables
from uptimeguard.models import AlertContact, Monitor, MonitorContact
from uptimeguard.services.datastore import Datastore
from uptimeguard.services.kv_store import EphemeralStore
from uptimeguard.services.pipeline import build_core
from uptimeguard.services.transport import Transport


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/uptimeguard-test.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def datastore(session_factory):
    return Datastore(session_factory)


@pytest.fixture
def kv_store(session_factory):
    return EphemeralStore(session_factory)


class FakeWeb:
    """Programmable ``httpx.MockTransport`` handler that records requests."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(200, text="OK")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def respond(self, status: int = 200, text: str = "OK"):
        self.handler = lambda request: httpx.Response(status, text=text)

    def requests_to(self, prefix: str) -> List[httpx.Request]:
        return [request for request in self.requests if str(request.url).startswith(prefix)]

    def json_bodies(self, prefix: str) -> List[dict]:
        return [json.loads(request.content) for request in self.requests_to(prefix)]


@pytest.fixture
def web():
    return FakeWeb()


@pytest.fixture
async def transport(web):
    transport = Transport(client=httpx.AsyncClient(transport=httpx.MockTransport(web)))
    yield transport
    await transport.aclose()


@pytest.fixture
def core(session_factory, transport):
    return build_core(session_factory, transport=transport)


@pytest.fixture
def make_monitor(session_factory):
    async def _make(**fields) -> Monitor:
        values = {
            "name": "Example",
            "kind": "http",
            "url": "https://example.com/health",
            "interval_seconds": 60,
            "timeout_seconds": 5,
        }
        values.update(fields)
        async with session_factory() as session:
            monitor = Monitor(**values)
            session.add(monitor)
            await session.commit()
            return monitor

    return _make


@pytest.fixture
def make_contact(session_factory):
    async def _make(
        monitor_id: int,
        type: str = "webhook",
        destination: str = "https://hooks.example.com/alerts",
        settings: dict = None,
        notify_on_down: bool = True,
        notify_on_up: bool = True,
        delay_minutes: int = 0,
        **fields,
    ) -> AlertContact:
        async with session_factory() as session:
            contact = AlertContact(
                name=f"{type} contact",
                type=type,
                destination=destination,
                settings=json.dumps(settings) if settings is not None else None,
                **fields,
            )
            session.add(contact)
            await session.flush()
            session.add(MonitorContact(
                monitor_id=monitor_id,
                contact_id=contact.id,
                notify_on_down=notify_on_down,
                notify_on_up=notify_on_up,
                delay_minutes=delay_minutes,
            ))
            await session.commit()
            return contact

    return _make
