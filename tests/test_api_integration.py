"""
Integration tests for the Transaction History API
Tests end-to-end flows using FastAPI TestClient
"""

import sys
import pytest
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from decimal import Decimal
from fastapi.testclient import TestClient

from transaction_history.api import create_app
from transaction_history.config import LedgerConfig
from transaction_history.engine import BalanceEngine
from transaction_history.ledger import CommitOutcome
from transaction_history.storage import (
    InMemoryLedgerStore, StoreUnavailableError, StoreTimeoutError
)


class FailingStore(InMemoryLedgerStore):
    """Store whose appends fail with a configurable error"""

    def __init__(self, error):
        super().__init__()
        self.error = error

    def _write(self, entry):
        raise self.error


def make_client(store=None, **settings):
    config = LedgerConfig(database_url="memory://", **settings)
    engine = BalanceEngine(store or InMemoryLedgerStore())
    return TestClient(create_app(engine=engine, config=config))


@pytest.fixture
def client():
    """Create a test client backed by an in-memory ledger"""
    return make_client()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        """Test health endpoint"""
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["entries"] == 0

    def test_root(self, client):
        """Test root endpoint"""
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Transaction History API"
        assert "history" in data["endpoints"]

    def test_health_with_closed_store(self):
        """A closed store makes the service unhealthy"""
        store = InMemoryLedgerStore()
        client = make_client(store=store)
        store.close()

        r = client.get("/health")
        assert r.status_code == 503
        assert r.json()["status"] == "unhealthy"


class TestLedgerFlow:
    """End-to-end credit/debit scenarios"""

    def test_credit(self, client):
        """Credit on an empty ledger returns the committed entry"""
        r = client.post("/credit", json={"amount": 100})
        assert r.status_code == 200
        data = r.json()
        assert data["message"] == "Credit successful"
        assert data["kind"] == "Credit"
        assert data["amount"] == "100.00"
        assert data["balance"] == "100.00"
        assert data["sequence"] == 1

        assert client.get("/balance").json() == {"balance": "100.00"}

        history = client.get("/history").json()
        assert len(history) == 1
        assert history[0]["kind"] == "Credit"
        assert history[0]["amount"] == "100.00"
        assert history[0]["balance"] == "100.00"
        assert set(history[0]) == {"sequence", "kind", "amount", "balance", "timestamp"}

    def test_full_lifecycle(self, client):
        """credit -> debit -> rejected debit -> rejected credit"""
        assert client.post("/credit", json={"amount": 100}).status_code == 200

        r = client.post("/debit", json={"amount": 40})
        assert r.status_code == 200
        assert r.json()["balance"] == "60.00"

        r = client.post("/debit", json={"amount": 1000})
        assert r.status_code == 400
        assert r.json()["detail"]["reason"] == "insufficient_balance"

        r = client.post("/credit", json={"amount": -5})
        assert r.status_code == 400
        assert r.json()["detail"]["reason"] == "invalid_amount"

        assert client.get("/balance").json()["balance"] == "60.00"
        history = client.get("/history").json()
        assert [h["sequence"] for h in history] == [2, 1]
        assert [h["kind"] for h in history] == ["Debit", "Credit"]

    def test_decimal_string_amount(self, client):
        """Amounts may be sent as decimal strings"""
        r = client.post("/credit", json={"amount": "12.345"})
        assert r.status_code == 200
        assert r.json()["amount"] == "12.35"

    @pytest.mark.parametrize("amount", ["abc", "NaN", "-0.01", "Infinity"])
    def test_invalid_amounts(self, client, amount):
        """Non-numeric, non-finite and negative amounts are client errors"""
        r = client.post("/credit", json={"amount": amount})
        assert r.status_code == 400
        assert r.json()["detail"]["reason"] == "invalid_amount"

    def test_missing_amount(self, client):
        """A body without an amount fails request validation"""
        r = client.post("/debit", json={})
        assert r.status_code == 422

    def test_malformed_json(self, client):
        """A body that is not JSON fails request validation"""
        r = client.post(
            "/credit", content=b"amount=", headers={"content-type": "application/json"}
        )
        assert r.status_code == 422

    def test_form_encoded_submissions(self, client):
        """The HTML form posts URL-encoded bodies"""
        r = client.post("/credit", data={"amount": "10"})
        assert r.status_code == 200
        assert r.json()["amount"] == "10.00"
        assert r.json()["balance"] == "10.00"

        r = client.post("/debit", data={"amount": "2.5"})
        assert r.status_code == 200
        assert r.json()["balance"] == "7.50"

        r = client.post("/debit", data={"amount": "100"})
        assert r.status_code == 400
        assert r.json()["detail"]["reason"] == "insufficient_balance"

    def test_form_without_amount(self, client):
        """A form without an amount field fails request validation"""
        r = client.post("/credit", data={"value": "10"})
        assert r.status_code == 422
        assert client.get("/balance").json() == {"balance": "0"}

    def test_amount_beyond_exact_balance(self, client):
        """A credit that would round the balance is rejected, not rounded"""
        largest = "99999999999999999999999999.99"
        assert client.post("/credit", json={"amount": largest}).status_code == 200

        r = client.post("/credit", json={"amount": largest})
        assert r.status_code == 400
        assert r.json()["detail"]["reason"] == "invalid_amount"
        assert client.get("/balance").json() == {"balance": largest}

    def test_concurrent_credits(self, client):
        """Concurrent requests commit with distinct consecutive sequences"""
        with ThreadPoolExecutor(max_workers=4) as executor:
            responses = list(executor.map(
                lambda _: client.post("/credit", json={"amount": 10}), range(8)
            ))

        assert all(r.status_code == 200 for r in responses)
        assert sorted(r.json()["sequence"] for r in responses) == list(range(1, 9))
        assert client.get("/balance").json()["balance"] == "80.00"

    def test_verify(self, client):
        """verify replays the stored history"""
        client.post("/credit", json={"amount": 100})
        client.post("/debit", json={"amount": 25})

        r = client.get("/verify")
        assert r.status_code == 200
        assert r.json() == {"status": "consistent", "entries": 2, "balance": "75.00"}

    def test_verify_with_stale_cached_balance(self):
        """A cached balance that disagrees with history is an integrity error"""
        store = InMemoryLedgerStore()
        client = make_client(store=store)
        client.post("/credit", json={"amount": 100})
        store._head = replace(store._head, balance=Decimal("5"))

        r = client.get("/verify")
        assert r.status_code == 500
        assert r.json()["detail"]["reason"] == "integrity_error"
        assert r.json()["detail"]["sequence"] == 1


class TestStorageFailures:
    """Storage failures map to server errors"""

    def test_unavailable_store(self):
        """A definite storage failure is a 503"""
        client = make_client(store=FailingStore(StoreUnavailableError("disk full")))

        r = client.post("/credit", json={"amount": 10})
        assert r.status_code == 503
        detail = r.json()["detail"]
        assert detail["reason"] == "storage_failure"
        assert detail["outcome"] == CommitOutcome.FAILED.value

    def test_unknown_outcome(self):
        """A storage timeout is a 504 with an unknown outcome"""
        client = make_client(store=FailingStore(StoreTimeoutError("commit timed out")))

        r = client.post("/credit", json={"amount": 10})
        assert r.status_code == 504
        assert r.json()["detail"]["outcome"] == CommitOutcome.UNKNOWN.value

    def test_reads_on_closed_store(self):
        """Reads against an unavailable store are 503s"""
        store = InMemoryLedgerStore()
        client = make_client(store=store)
        store.close()

        assert client.get("/balance").status_code == 503
        assert client.get("/history").status_code == 503
        assert client.post("/debit", json={"amount": 1}).status_code == 503


class TestMetrics:
    """Prometheus exposition"""

    def test_request_counter(self, client):
        """Every request is counted by method and path"""
        client.post("/credit", json={"amount": 5})
        client.get("/balance")
        client.get("/balance")

        r = client.get("/metrics")
        assert r.status_code == 200
        body = r.text
        assert 'http_requests_total{method="GET",path="/balance"} 2.0' in body
        assert 'http_requests_total{method="POST",path="/credit"} 1.0' in body
        assert 'ledger_submissions_total{kind="Credit",outcome="committed"} 1.0' in body

    def test_unknown_paths_share_one_label(self, client):
        """Unrouted paths never create new series"""
        for i in range(5):
            assert client.get(f"/missing/{i}").status_code == 404
        client.get("/credit")

        body = client.get("/metrics").text
        assert 'http_requests_total{method="GET",path="unmatched"} 5.0' in body
        assert "/missing/" not in body
        assert 'http_requests_total{method="GET",path="/credit"} 1.0' in body

    def test_default_collectors(self, client):
        """Interpreter and GC series are exposed alongside the counters"""
        body = client.get("/metrics").text
        assert "python_info" in body
        assert "python_gc_objects_collected_total" in body

    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="process metrics read /proc")
    def test_process_collector(self, client):
        """Process CPU and memory series are exposed"""
        body = client.get("/metrics").text
        assert "process_cpu_seconds_total" in body
        assert "process_resident_memory_bytes" in body

    def test_metrics_disabled(self):
        """The metrics endpoint is absent when disabled"""
        client = make_client(enable_metrics=False)
        assert client.get("/metrics").status_code == 404


class TestStaticFiles:
    """Optional static front-end"""

    def test_static_index(self, tmp_path):
        """index.html is served at / when a static directory is configured"""
        (tmp_path / "index.html").write_text("<h1>Transaction History</h1>")
        client = make_client(static_dir=str(tmp_path))

        r = client.get("/")
        assert r.status_code == 200
        assert "Transaction History" in r.text

        # API routes still take precedence over the static mount
        assert client.get("/balance").json() == {"balance": "0"}


class TestAppFromConfig:
    """Application built from configuration alone"""

    def test_sqlite_backed_app(self, tmp_path):
        """create_app builds its own store from the database URL"""
        config = LedgerConfig(database_url=f"sqlite:///{tmp_path / 'ledger.db'}")

        with TestClient(create_app(config=config)) as client:
            assert client.post("/credit", json={"amount": 7}).status_code == 200

        with TestClient(create_app(config=config)) as client:
            assert client.get("/balance").json()["balance"] == "7.00"
