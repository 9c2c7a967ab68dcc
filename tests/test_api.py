"""HTTP surface tests against the FastAPI app."""
import httpx
import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from fastapi.testclient import TestClient

from forge_service.main import create_app

from conftest import COUNTER_SOURCE, FakeSandbox

HEADERS = {"X-User-Address": "0xABC"}


def _rpc_handler(request):
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x10"})


@pytest.fixture
def client(settings):
    app = create_app(
        settings,
        redis_client=FakeAsyncRedis(server=FakeServer(), decode_responses=True),
        sandbox=FakeSandbox(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_rpc_handler)),
        start_workers=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def _submission(**overrides):
    body = {
        "kind": "compile",
        "files": [{"path": "src/Counter.sol", "content": COUNTER_SOURCE}],
    }
    body.update(overrides)
    return body


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["sandbox"] == "simulated"


def test_submit_and_poll(client):
    response = client.post("/api/v1/forge/jobs", json=_submission(), headers=HEADERS)
    assert response.status_code == 201
    job = response.json()
    assert job["status"] == "queued"
    assert job["owner"] == "0xabc"
    assert job["cached"] is False

    polled = client.get(f"/api/v1/forge/jobs/{job['id']}", headers=HEADERS)
    assert polled.status_code == 200
    assert polled.json()["id"] == job["id"]

    output = client.get(f"/api/v1/forge/jobs/{job['id']}/output", headers=HEADERS)
    assert output.json() == {"job_id": job["id"], "output": ""}


def test_submit_requires_user_address(client):
    response = client.post("/api/v1/forge/jobs", json=_submission())
    assert response.status_code == 400


def test_invalid_path_is_rejected(client):
    body = _submission(files=[{"path": "../etc/passwd", "content": "x"}])
    response = client.post("/api/v1/forge/jobs", json=body, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "InvalidPath"


def test_unsupported_fork_chain_is_rejected(client):
    body = _submission(kind="test", fork_config={"chain_id": 999999})
    response = client.post("/api/v1/forge/jobs", json=body, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "UnsupportedChain"


def test_other_owner_gets_not_found(client):
    job = client.post("/api/v1/forge/jobs", json=_submission(), headers=HEADERS).json()

    other = {"X-User-Address": "0xdef"}
    assert client.get(f"/api/v1/forge/jobs/{job['id']}", headers=other).status_code == 404
    assert client.get(f"/api/v1/forge/jobs/{job['id']}/output", headers=other).status_code == 404
    assert client.get(f"/api/v1/forge/jobs/{job['id']}/stream", headers=other).status_code == 404


def test_rpc_proxy_allows_reads(client):
    response = client.post("/api/v1/forge/rpc/1", json={"method": "eth_blockNumber", "params": []})
    assert response.status_code == 200
    assert response.json() == {"result": "0x10"}


def test_rpc_proxy_answers_json_rpc_envelopes(client):
    body = {"jsonrpc": "2.0", "id": 7, "method": "eth_blockNumber", "params": []}
    response = client.post("/api/v1/forge/rpc/1", json=body)
    assert response.status_code == 200
    assert response.json() == {"jsonrpc": "2.0", "id": 7, "result": "0x10"}


def test_rpc_proxy_json_rpc_errors_echo_id(client):
    body = {"jsonrpc": "2.0", "id": "a", "method": "eth_sendRawTransaction", "params": ["0x"]}
    response = client.post("/api/v1/forge/rpc/1", json=body)
    assert response.status_code == 200
    payload = response.json()
    assert payload["id"] == "a"
    assert payload["error"]["code"] == -32601
    assert "result" not in payload


def test_rpc_proxy_blocks_writes(client):
    response = client.post("/api/v1/forge/rpc/1", json={"method": "eth_sendTransaction", "params": [{}]})
    assert response.status_code == 405
    assert response.json()["detail"]["code"] == "MethodNotAllowed"


def test_rpc_proxy_unknown_chain(client):
    response = client.post("/api/v1/forge/rpc/999999", json={"method": "eth_chainId"})
    assert response.status_code == 400


def test_maintenance_sweep(client):
    response = client.post("/api/v1/forge/maintenance/sweep")
    assert response.status_code == 200
    assert response.json() == {"stale_cancelled": 0, "expired": 0}
