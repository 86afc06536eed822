import pytest
from fastapi.testclient import TestClient

from lifecycle_engine.database.database import init_engine
from lifecycle_engine.main import app
from lifecycle_engine.services.price_oracle import StaticPriceOracle
from tests.factories import eurusd_payload

OPERATOR = {"X-Operator-Token": "test-operator-token"}


def usdjpy_payload(**overrides):
    payload = {
        "symbol": "USDJPY",
        "direction": "SELL",
        "entry_price": 150.00,
        "stop_loss": 150.20,
        "take_profit_1": 149.70,
        "take_profit_2": 149.40,
        "take_profit_3": 149.00,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def oracle():
    return StaticPriceOracle({"EURUSD": 1.08600, "USDJPY": 150.00})


@pytest.fixture
def client(tmp_path, oracle):
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    app.state.price_oracle = oracle
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"]["monitor"] == "IDLE"
    assert body["services"]["monitor_loop"] == "stopped"
    assert body["uptime_sec"] >= 0


def test_create_position(client):
    response = client.post("/api/positions", json=eurusd_payload(id="sig-1"))
    assert response.status_code == 201
    body = response.json()
    assert body["bot_paused"] is False
    assert body["position"]["phase"] == "ACTIVE"
    assert body["position"]["current_stop_loss"] == 1.08300
    assert body["position"]["tp1_close_pct"] == 33.0

    listed = client.get("/api/positions").json()
    assert [p["id"] for p in listed] == ["sig-1"]


def test_create_position_rejects_stop_on_wrong_side(client):
    response = client.post("/api/positions", json=eurusd_payload(stop_loss=1.08600))
    assert response.status_code == 422
    assert response.json()["field"] == "stop_loss"


def test_create_position_rejects_unknown_direction(client):
    response = client.post("/api/positions", json=eurusd_payload(direction="LONG"))
    assert response.status_code == 422


def test_unknown_position_is_404(client):
    assert client.get("/api/positions/missing").status_code == 404
    assert client.get("/api/positions/missing/events").status_code == 404


def test_monitor_run_advances_position_and_feeds_events(client, oracle):
    client.post("/api/positions", json=eurusd_payload(id="sig-1"))
    oracle.set_price("EURUSD", 1.08900)

    summary = client.post("/api/monitor/run").json()
    assert summary["transitions_applied"] == 1
    assert summary["events_written"] == 2

    position = client.get("/api/positions/sig-1").json()
    assert position["phase"] == "PHASE1"
    assert position["current_stop_loss"] == 1.08500
    assert position["remaining_position_pct"] == pytest.approx(67.0)

    feed = client.get("/api/events", params={"since_id": 0}).json()
    types = [e["event_type"] for e in feed["events"]]
    assert types == ["ACTIVATED", "TP1_HIT", "MOVED_TO_BREAKEVEN"]
    ids = [e["id"] for e in feed["events"]]
    assert ids == sorted(ids)
    assert feed["next_since_id"] == ids[-1]

    tp1 = feed["events"][1]
    assert tp1["symbol"] == "EURUSD"
    assert tp1["direction"] == "BUY"
    assert tp1["sl_before"] == 1.08300
    assert tp1["sl_after"] == 1.08500
    assert tp1["position_closed_pct"] == pytest.approx(33.0)
    assert tp1["r_multiple"] == pytest.approx(0.66)

    caught_up = client.get("/api/events", params={"since_id": feed["next_since_id"]}).json()
    assert caught_up["events"] == []
    assert caught_up["next_since_id"] == feed["next_since_id"]

    status = client.get("/api/monitor/status").json()
    assert status["cycles_run"] == 1
    assert status["last_cycle"]["transitions_applied"] == 1


def test_circuit_breaker_and_operator_clear(client, oracle):
    for i in range(3):
        client.post("/api/positions", json=usdjpy_payload(id=f"s{i}"))
    oracle.set_price("USDJPY", 150.30)

    summary = client.post("/api/monitor/run").json()
    assert summary["final_closes"] == 3
    assert summary["pause_triggered"] is True

    status = client.get("/api/risk/status").json()
    assert status["bot_paused"] is True
    assert status["pause_reason"] == "3 consecutive losses"

    ledger = client.get("/api/risk/ledger/today").json()
    assert ledger["losing_trades"] == 3
    assert ledger["total_r_multiple"] == pytest.approx(-3.0)

    fourth = client.post("/api/positions", json=eurusd_payload(id="fourth"))
    assert fourth.status_code == 201
    assert fourth.json()["bot_paused"] is True

    body = {"operator": "alice", "note": "reviewed losses"}
    assert client.post("/api/risk/pause/clear", json=body).status_code == 401
    assert client.post("/api/risk/pause/clear", json=body, headers={"X-Operator-Token": "nope"}).status_code == 403

    cleared = client.post("/api/risk/pause/clear", json=body, headers=OPERATOR)
    assert cleared.status_code == 200
    assert cleared.json()["bot_paused"] is False
    assert cleared.json()["cleared_dates"] == [ledger["date"]]

    assert client.get("/api/risk/status").json()["bot_paused"] is False
    ledger = client.get("/api/risk/ledger/today").json()
    assert ledger["consecutive_losses"] == 0
    assert ledger["pause_cleared_by"] == "alice"


def test_ledger_for_day_without_trades(client):
    ledger = client.get("/api/risk/ledger/2026-01-05").json()
    assert ledger["date"] == "2026-01-05"
    assert ledger["total_trades"] == 0
    assert ledger["bot_paused"] is False


def test_manual_close_requires_operator_and_closes_once(client):
    client.post("/api/positions", json=eurusd_payload(id="sig-1"))
    body = {"operator": "alice", "price": 1.08700}

    assert client.post("/api/positions/sig-1/close", json=body).status_code == 401

    response = client.post("/api/positions/sig-1/close", json=body, headers=OPERATOR)
    assert response.status_code == 200
    closed = response.json()
    assert closed["phase"] == "CLOSED"
    assert closed["exit_reason"] == "MANUAL"
    assert closed["outcome"] == "WIN"
    assert closed["realized_r_multiple"] == pytest.approx(1.0)

    again = client.post("/api/positions/sig-1/close", json=body, headers=OPERATOR)
    assert again.status_code == 409

    events = client.get("/api/positions/sig-1/events").json()
    assert [e["event_type"] for e in events] == ["ACTIVATED", "FINAL_CLOSE"]


def test_metrics_endpoint(client):
    client.post("/api/monitor/run")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "lifecycle_monitor_cycles_total" in response.text
