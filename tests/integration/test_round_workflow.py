"""
Integration tests for complete aggregation rounds over the HTTP API.
"""
import pytest
from fastapi.testclient import TestClient

from src.aggregation_server.blob_store import content_id, serialize_weights
from src.aggregation_server import main
from src.aggregation_server.errors import StoreUnavailableError
from src.aggregation_server.main import create_app
from src.common.config import ConfigManager
from src.common.interfaces import LayerWeights, ModelArchitecture, ModelWeights
from tests.conftest import build_weights


def submission_payload(participant_id, value=1.0, dataset_size=10, accuracy=0.8, loss=0.2, **extra):
    payload = {
        "participant_id": participant_id,
        "model_weights": {
            "layers": [{"name": "dense", "weights": [[[value, value]]], "biases": [[value, value]]}],
            "total_parameters": 4,
            "architecture": {"input_dim": 1, "hidden_layers": [], "output_dim": 2},
        },
        "weights_hash": "0x" + "cd" * 16,
        "metrics": {"loss": loss, "mae": 0.1, "accuracy": accuracy},
        "dataset_size": dataset_size,
        "round": 1,
        "model_version": 0,
        "timestamp": 1700000000000,
        "signature": f"sig-{participant_id}",
        "tx_hash": f"0xtx-{participant_id}",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def client(test_config):
    with TestClient(create_app(test_config)) as client:
        yield client


@pytest.mark.integration
class TestAggregationRound:
    """End-to-end round through the REST API"""

    def test_complete_round(self, client):
        responses = [
            client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}", value=float(i + 1),
                                                                   dataset_size=10 * (i + 1)))
            for i in range(3)
        ]

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert [r.json()["pool_size"] for r in responses[:2]] == [1, 2]
        final = responses[-1].json()
        assert final["aggregation_triggered"]
        assert final["new_version"] == 1
        assert final["pool_size"] == 0

        status = client.get("/api/fl/status").json()
        assert status["current_round"] == 2
        assert status["current_version"] == 1
        assert status["state"] == "idle"
        assert status["algorithm_info"]["name"] == "FedAvg"
        assert "median" in status["algorithm_info"]["available_algorithms"]

        model = client.get("/api/fl/global-model").json()
        expected = (1 * 10 + 2 * 20 + 3 * 30) / 60
        assert model["version"] == 1
        assert model["weights"]["layers"][0]["weights"][0][0][0] == pytest.approx(expected)
        assert model["metadata"]["trained_by"] == 3
        assert model["metadata"]["total_samples"] == 60

        history = client.get("/api/fl/history").json()["history"]
        assert len(history) == 1
        assert history[0]["participating_farmers"] == ["farmer-0", "farmer-1", "farmer-2"]
        assert "global_weights" not in history[0]

    def test_aggregate_requires_minimum(self, test_config):
        test_config.aggregation.min_submissions = 5
        with TestClient(create_app(test_config)) as client:
            for i in range(3):
                client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}"))

            assert client.post("/api/fl/aggregate").status_code == 422

            for i in range(3, 5):
                client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}"))

            status = client.get("/api/fl/status").json()
            assert status["current_version"] == 1
            assert status["pool_size"] == 0

    def test_no_global_model_yet(self, client):
        assert client.get("/api/fl/global-model").status_code == 404
        assert client.get("/api/fl/history").json() == {"history": []}

    def test_health_and_metrics(self, client):
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["current_round"] == 1

        client.post("/api/fl/submit", json=submission_payload("farmer-0"))
        metrics = client.get("/metrics")

        assert metrics.status_code == 200
        assert 'fl_submissions_total{component="aggregation_server",status="accepted"} 1.0' in metrics.text

    def test_reset(self, client):
        for i in range(3):
            client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}"))

        assert client.post("/api/fl/reset").json()["success"]

        status = client.get("/api/fl/status").json()
        assert status["current_round"] == 1
        assert status["current_version"] == 0
        assert client.get("/api/fl/global-model").status_code == 404

    def test_reset_reports_unavailable_store(self, client, monkeypatch):
        for i in range(3):
            client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}"))

        async def failing_clear():
            raise StoreUnavailableError("model store is read-only")

        monkeypatch.setattr(client.app.state.coordinator.store, "clear", failing_clear)
        response = client.post("/api/fl/reset")

        assert response.status_code == 503
        assert client.get("/api/fl/status").json()["current_version"] == 1
        assert client.get("/api/fl/global-model").json()["version"] == 1

    def test_nothing_to_retry(self, client):
        assert client.post("/api/fl/persist/retry").status_code == 404


@pytest.mark.integration
class TestSubmissionRejections:
    """Submissions turned away at intake"""

    def test_missing_signature(self, client):
        response = client.post("/api/fl/submit", json=submission_payload("farmer-0", signature=None))

        assert response.status_code == 400
        assert not response.json()["accepted"]
        assert "Verification failed" in response.json()["reason"]

    def test_short_weights_hash(self, client):
        response = client.post("/api/fl/submit", json=submission_payload("farmer-0", weights_hash="0x1"))

        assert response.status_code == 400

    def test_ragged_weights(self, client):
        payload = submission_payload("farmer-0")
        payload["model_weights"]["layers"][0]["weights"] = [[[1.0, 2.0], [3.0]]]

        response = client.post("/api/fl/submit", json=payload)

        assert response.status_code == 400
        assert "ragged" in response.json()["reason"]
        assert client.get("/api/fl/status").json()["pool_size"] == 0

    def test_malformed_request(self, client):
        payload = submission_payload("farmer-0")
        del payload["metrics"]

        assert client.post("/api/fl/submit", json=payload).status_code == 422


@pytest.mark.integration
class TestBlobSubmissions:
    """Weights referenced by content id"""

    def test_submit_by_content_id(self, client):
        weights = build_weights(0.5, shape=(1, 2), bias_len=2)
        data = serialize_weights(weights)
        cid = content_id(data)
        client.app.state.coordinator.blob_store._blobs[cid] = data

        payload = submission_payload("farmer-0", model_weights=None, weights_cid=cid)
        response = client.post("/api/fl/submit", json=payload)

        assert response.status_code == 200
        pending = client.app.state.coordinator.pending["farmer-0"]
        assert pending.model_weights.layers[0].weights == [[[0.5, 0.5]]]

    def test_blob_with_wrong_nesting_is_rejected(self, client):
        weights = ModelWeights(
            layers=[LayerWeights("dense", weights=[[1.0, 2.0]], biases=[[0.0, 0.0]])],
            total_parameters=4,
            architecture=ModelArchitecture(input_dim=1, hidden_layers=[], output_dim=2),
        )
        data = serialize_weights(weights)
        cid = content_id(data)
        client.app.state.coordinator.blob_store._blobs[cid] = data

        payload = submission_payload("farmer-0", model_weights=None, weights_cid=cid)
        response = client.post("/api/fl/submit", json=payload)

        assert response.status_code == 400
        assert "must be a list" in response.json()["reason"]
        assert client.get("/api/fl/status").json()["pool_size"] == 0

    def test_unknown_content_id(self, client):
        payload = submission_payload("farmer-0", model_weights=None, weights_cid=content_id(b"nothing"))

        assert client.post("/api/fl/submit", json=payload).status_code == 404

    def test_global_model_blob_is_stored(self, client):
        for i in range(3):
            client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}"))

        model = client.get("/api/fl/global-model").json()

        assert model["metadata"]["weights_cid"].startswith("sha256-")


@pytest.mark.integration
class TestRestart:

    def test_state_survives_restart(self, test_config):
        with TestClient(create_app(test_config)) as client:
            for i in range(3):
                client.post("/api/fl/submit", json=submission_payload(f"farmer-{i}"))
            client.post("/api/fl/submit", json=submission_payload("late"))

        with TestClient(create_app(test_config)) as client:
            status = client.get("/api/fl/status").json()
            assert status["current_round"] == 2
            assert status["current_version"] == 1
            assert status["pool_size"] == 1
            assert client.get("/api/fl/global-model").json()["version"] == 1
            assert len(client.get("/api/fl/history").json()["history"]) == 1


@pytest.mark.integration
class TestConfigHotReload:

    def test_observer_runs_only_while_app_is_up(self, test_config, temp_dir, monkeypatch):
        manager = ConfigManager(temp_dir)
        monkeypatch.setattr(main, "config_manager", manager)
        test_config.hot_reload = True

        with TestClient(create_app(test_config)):
            assert manager._observer is not None
            assert manager._reload_callbacks == [main._apply_log_level]

        assert manager._observer is None
        assert manager._reload_callbacks == []

    def test_disabled_by_default(self, client):
        assert main.config_manager._observer is None
