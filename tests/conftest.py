import pytest
from fastapi.testclient import TestClient

from main import create_app
from protocol import SyncProtocol, recipients
from store import SessionStore
from sync_client import SyncClient


AHMED = {"id": "2024001", "fullName": "Ahmed Ali", "phoneNumber": "0100000000"}


class Loopback:
    """In-process transport wiring SyncClients to one SyncProtocol."""

    def __init__(self, protocol: SyncProtocol):
        self.protocol = protocol
        self.clients = {}
        self.sent = []

    def connect(self, conn_id: str, client: SyncClient) -> SyncClient:
        self.clients[conn_id] = client
        self.deliver(conn_id, self.protocol.on_connect(conn_id))
        client.connect(lambda message: self.receive(conn_id, message))
        return client

    def disconnect(self, conn_id: str) -> None:
        client = self.clients.pop(conn_id)
        client.disconnect()
        self.deliver(conn_id, self.protocol.on_disconnect(conn_id))

    def receive(self, conn_id: str, message: dict) -> None:
        self.deliver(conn_id, self.protocol.on_message(conn_id, message))

    def deliver(self, sender_id, outbounds) -> None:
        for out in outbounds:
            for conn_id in recipients(out.audience, sender_id, list(self.clients)):
                self.sent.append((conn_id, out.event))
                self.clients[conn_id].handle(out.message())


@pytest.fixture
def store():
    return SessionStore(max_sessions=8)


@pytest.fixture
def protocol(store):
    return SyncProtocol(store)


@pytest.fixture
def loopback(protocol):
    return Loopback(protocol)


@pytest.fixture
def ahmed():
    return dict(AHMED)


@pytest.fixture
def app(store, tmp_path, monkeypatch):
    monkeypatch.setattr("settings.UPLOAD_DIR", str(tmp_path / "uploads"))
    return create_app(store)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
