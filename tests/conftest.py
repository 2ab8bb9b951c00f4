"""
Pytest configuration and shared fixtures for the test suite.
"""
import asyncio
import pytest
import tempfile
import shutil
from typing import List, Optional

from src.common.config import AppConfig, StorageConfig, VerificationConfig, MonitoringConfig, AggregationSettings
from src.common.interfaces import (
    AggregationConfig, LayerWeights, ModelArchitecture, ModelSubmission, ModelWeights,
    SubmissionMetrics, VerificationGateway
)
from src.aggregation_server.coordinator import RoundCoordinator
from src.aggregation_server.storage import InMemoryModelStore
from src.aggregation_server.verification import AllowAllVerificationGateway


def build_weights(value: float = 1.0, shape=(1, 1), bias_len: int = 1, name: str = "dense") -> ModelWeights:
    """Single-layer weights filled with ``value``"""
    rows, cols = shape
    return ModelWeights(
        layers=[LayerWeights(
            name=name,
            weights=[[[value] * cols for _ in range(rows)]],
            biases=[[value] * bias_len],
        )],
        total_parameters=rows * cols + bias_len,
        architecture=ModelArchitecture(input_dim=max(rows, 1), hidden_layers=[], output_dim=max(cols, 1)),
    )


def build_submission(participant_id: str = "farmer-1", value: float = 1.0, dataset_size: int = 10,
                     accuracy: float = 0.8, loss: float = 0.2, mae: float = 0.1,
                     weights: Optional[ModelWeights] = None, **overrides) -> ModelSubmission:
    fields = dict(
        participant_id=participant_id,
        model_weights=weights if weights is not None else build_weights(value),
        weights_hash="0x" + "ab" * 16,
        metrics=SubmissionMetrics(loss=loss, mae=mae, accuracy=accuracy),
        dataset_size=dataset_size,
        round=1,
        model_version=0,
        signature="sig-" + participant_id,
        tx_hash="0xtx-" + participant_id,
    )
    fields.update(overrides)
    return ModelSubmission(**fields)


class SlowVerificationGateway(VerificationGateway):
    """Gateway that answers after ``delay`` seconds"""

    def __init__(self, delay: float, answer: bool = True):
        self.delay = delay
        self.answer = answer
        self.calls = 0

    async def verify(self, submission: ModelSubmission) -> bool:
        self.calls += 1
        await asyncio.sleep(self.delay)
        return self.answer


class FlakyModelStore(InMemoryModelStore):
    """In-memory store whose ``save`` fails a configurable number of times"""

    def __init__(self, failures: int = 0, max_history: int = 100):
        super().__init__(max_history=max_history)
        self.failures = failures
        self.save_attempts = 0

    async def save(self, model) -> None:
        self.save_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk unavailable")
        await super().save(model)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def make_weights():
    return build_weights


@pytest.fixture
def make_submission():
    return build_submission


@pytest.fixture
def aggregation_config():
    """Default aggregation settings with outlier detection on"""
    return AggregationConfig()


@pytest.fixture
def model_store():
    return InMemoryModelStore()


@pytest.fixture
async def coordinator(aggregation_config, model_store):
    """Initialized coordinator with an accept-all gateway and in-memory store."""
    coordinator = RoundCoordinator(
        config=aggregation_config,
        verification_gateway=AllowAllVerificationGateway(),
        store=model_store,
        verification_timeout=1.0,
        retry_backoff=0.0,
    )
    await coordinator.initialize()
    yield coordinator
    await coordinator.shutdown()


@pytest.fixture
def honest_submissions() -> List[ModelSubmission]:
    """Five well-behaved participants with clustered metrics"""
    accuracies = [0.80, 0.82, 0.81, 0.83, 0.79]
    losses = [0.20, 0.19, 0.21, 0.18, 0.22]
    return [
        build_submission(f"farmer-{i}", value=float(i + 1), dataset_size=10 * (i + 1),
                         accuracy=accuracies[i], loss=losses[i])
        for i in range(5)
    ]


@pytest.fixture
def test_config(temp_dir):
    """Application configuration with test-safe values."""
    return AppConfig(
        environment="testing",
        debug=False,
        aggregation=AggregationSettings(min_submissions=3),
        verification=VerificationConfig(gateway="signature", timeout_seconds=1.0),
        storage=StorageConfig(
            backend="file",
            directory=f"{temp_dir}/models",
            save_retries=1,
            retry_backoff_seconds=0.0,
            blob_backend="memory",
            blob_directory=f"{temp_dir}/blobs",
        ),
        monitoring=MonitoringConfig(enable_metrics=True, log_level="DEBUG"),
    )
