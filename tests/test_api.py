import httpx
from fastapi.testclient import TestClient

from tally_dashboard.config import AppConfig, DatabaseConfig, LoggingConfig, SyncConfig, TallyConfig
from tally_dashboard.main import create_app

from .conftest import read_fixture


def tally_handler(request: httpx.Request) -> httpx.Response:
    body = request.content.decode("utf-16")
    if "<ID>CompanyList</ID>" in body:
        name = "company_list.xml"
    elif "<ID>VchIncr</ID>" in body:
        name = "vouchers_incremental.xml"
    elif "<TALLYREQUEST>Import</TALLYREQUEST>" in body:
        name = "import_created.xml"
    else:
        name = "empty_object.xml"
    return httpx.Response(200, content=read_fixture(name).encode("utf-8"))


def make_client(db_path, handler=tally_handler):
    config = AppConfig(
        tally=TallyConfig(min_request_interval=0),
        database=DatabaseConfig(path=db_path),
        sync=SyncConfig(autostart=False, poll_interval=0),
        logging=LoggingConfig(file="", colorize=False),
    )
    return TestClient(create_app(config, transport=httpx.MockTransport(handler)))


def test_status_and_info(db_path):
    with make_client(db_path) as client:
        status = client.get("/api/sync/status").json()
        info = client.get("/api/info").json()
    assert status["status"] == "idle"
    assert status["is_syncing"] is False
    assert info["database"]["path"] == db_path


def test_incremental_sync_then_read_voucher(db_path):
    with make_client(db_path) as client:
        result = client.post("/api/sync/incremental").json()
        voucher = client.get("/api/vouchers/guid-101").json()
        status = client.patch("/api/vouchers/guid-101/status", json={"payment_status": "paid"}).json()
        missing = client.get("/api/vouchers/nope")

    assert result["success"]
    assert result["new_count"] == 3
    assert result["cursor"] == 103
    assert voucher["voucher"]["counterparty_name"] == "Ram Traders"
    assert voucher["local_status"]["payment_status"] == "pending"
    assert status["success"]
    assert status["status"]["payment_status"] == "paid"
    assert missing.status_code == 404


def test_create_voucher_endpoint(db_path):
    draft = {"counterparty_name": "Ram Traders", "items": [{"item_name": "Rice", "quantity": 1, "rate": 100}]}
    with make_client(db_path) as client:
        result = client.post("/api/vouchers", json=draft).json()
    assert result == {"success": True, "queued": False, "remote_id": "842"}


def test_create_voucher_queues_when_tally_is_down(db_path):
    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(db_path, refused) as client:
        result = client.post("/api/vouchers", json={"counterparty_name": "Ram Traders"}).json()
        health = client.get("/api/health").json()

    assert result["queued"] is True
    assert health["status"] == "degraded"
    assert health["components"]["tally"]["status"] == "unhealthy"
    assert health["components"]["database"]["tables"]["pending_vouchers"] == 1


def test_health_with_tally_up(db_path):
    with make_client(db_path) as client:
        tally = client.get("/api/health/tally").json()
        database = client.get("/api/health/database").json()
    assert tally["status"] == "healthy"
    assert tally["companies"] == ["Himalayan Traders Pvt Ltd"]
    assert database["status"] == "healthy"


def test_range_request_is_validated(db_path):
    with make_client(db_path) as client:
        response = client.post("/api/sync/range", json={"from_date": "not-a-date", "to_date": "2024-05-01"})
        progress = client.get("/api/sync/full-history").json()
    assert response.status_code == 422
    assert progress == {"status": "not_started"}


def test_event_stream_receives_sync_events(db_path):
    with make_client(db_path) as client:
        with client.websocket_connect("/api/sync/events") as websocket:
            greeting = websocket.receive_json()
            client.post("/api/sync/masters")
            event = websocket.receive_json()
    assert greeting["event"] == "connected"
    assert greeting["data"]["status"] == "idle"
    assert event["event"] == "syncCompleted"
    assert event["data"]["pass"] == "master_data"
