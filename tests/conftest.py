import pytest
from fastapi.testclient import TestClient

from hostforge.core.config_store import AppConfig
from hostforge.main import create_app
from hostforge.runtime import Runtime
from hostforge.servers.models import Resource, ResourceKind, Server
from hostforge.tasks.status import TaskStatus
from hostforge.transport.recording import RecordingTransport


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    d = tmp_path / "logs"
    monkeypatch.setattr("hostforge.core.logging.LOG_DIR", str(d))
    return d


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        data_dir=str(tmp_path / "state"),
        signing_key="test-signing-key",
        callback_base_url="http://testserver",
        deployments_root="/home/hostforge/deployments",
        public_key="ssh-ed25519 AAAATEST hostforge",
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def rt(config, transport):
    return Runtime(config, transport)


@pytest.fixture
def client(config, transport):
    app = create_app(config, transport, start_workers=False)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def app_rt(client):
    return client.app.state.runtime


@pytest.fixture
def server(rt):
    s = Server(name="web-1", public_ip="203.0.113.10")
    rt.store.save(s)
    return s


def add_resource(store, server_id, kind, status=TaskStatus.ACTIVE, **kw):
    r = Resource(server_id=server_id, kind=ResourceKind(kind), status=status, **kw)
    store.save(r)
    return r
