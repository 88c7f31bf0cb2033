import pytest
from fastapi.testclient import TestClient


@pytest.fixture()
def client(monkeypatch) -> TestClient:
    import server

    # Each test starts with an empty rate-limit window
    monkeypatch.setattr(server, "rate_limit_store", server.defaultdict(list))

    # Entering the client runs startup handlers
    with TestClient(server.app) as test_client:
        yield test_client
