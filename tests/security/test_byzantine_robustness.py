"""
Robustness of the aggregation core against malicious or corrupt participants.
"""
import math
import pytest
import numpy as np

from src.aggregation_server.aggregation import FederatedAggregator
from src.aggregation_server.coordinator import RoundCoordinator
from src.aggregation_server.storage import InMemoryModelStore
from src.aggregation_server.verification import AllowAllVerificationGateway, SignatureVerificationGateway
from src.common.interfaces import AggregationConfig, LayerWeights, ModelArchitecture, ModelWeights
from tests.conftest import build_submission


def layer_weights(matrix, bias):
    rows, cols = np.shape(matrix)
    return ModelWeights(
        layers=[LayerWeights("dense", weights=[np.asarray(matrix).tolist()], biases=[list(bias)])],
        total_parameters=rows * cols + len(bias),
        architecture=ModelArchitecture(input_dim=rows, hidden_layers=[], output_dim=cols),
    )


async def start_coordinator(config, gateway=None):
    coordinator = RoundCoordinator(
        config, gateway or AllowAllVerificationGateway(), InMemoryModelStore(), retry_backoff=0.0
    )
    await coordinator.initialize()
    return coordinator


@pytest.mark.security
class TestModelPoisoning:
    """Poisoned weights that report plausible metrics"""

    def test_median_resists_scaled_updates(self):
        rng = np.random.default_rng(42)
        honest = [
            build_submission(f"honest-{i}", weights=layer_weights(1.0 + rng.normal(0, 0.05, (4, 3)), [0.0] * 3))
            for i in range(7)
        ]
        attackers = [
            build_submission(f"attacker-{i}", weights=layer_weights(np.full((4, 3), 1e6), [1e6] * 3))
            for i in range(3)
        ]
        config = AggregationConfig(algorithm="median", weighting_strategy="equal")

        result = FederatedAggregator(config).aggregate(honest + attackers)

        global_weights = np.array(result.layers[0].weights[0])
        honest_stack = np.array([s.model_weights.layers[0].weights[0] for s in honest])
        assert np.all(global_weights >= honest_stack.min(axis=0))
        assert np.all(global_weights <= honest_stack.max(axis=0))

    def test_fedavg_is_not_robust_to_scaled_updates(self):
        honest = [build_submission(f"honest-{i}", value=1.0) for i in range(9)]
        attacker = build_submission("attacker", value=1e6)

        result = FederatedAggregator(AggregationConfig(weighting_strategy="equal")).aggregate(honest + [attacker])

        assert result.layers[0].weights[0][0][0] > 1e4

    async def test_corrupt_metrics_keep_weights_out_of_global_model(self):
        coordinator = await start_coordinator(AggregationConfig(min_submissions=4))
        store = coordinator.store
        accuracies = [0.80, 0.82, 0.81, 0.83]
        submissions = [build_submission(f"honest-{i}", value=1.0, accuracy=a) for i, a in enumerate(accuracies)]
        submissions.append(build_submission("attacker", value=1e6, accuracy=0.05))
        await store.save_pending(submissions)
        await coordinator.initialize()

        result = await coordinator.aggregate()

        assert result.outliers == ["attacker"]
        assert result.global_weights.layers[0].weights[0][0][0] == pytest.approx(1.0)


@pytest.mark.security
class TestIntakeHardening:
    """Submissions that must never reach the pool"""

    @pytest.mark.parametrize("bad_value", [math.nan, math.inf])
    async def test_non_finite_weights_are_rejected(self, bad_value):
        coordinator = await start_coordinator(AggregationConfig())

        outcome = await coordinator.submit(build_submission("attacker", value=bad_value))

        assert not outcome.accepted
        assert coordinator.pool_size == 0

    async def test_repeated_submissions_do_not_multiply_influence(self):
        coordinator = await start_coordinator(AggregationConfig(min_submissions=3))

        for attempt in range(10):
            outcome = await coordinator.submit(build_submission("attacker", value=float(attempt)))

        assert outcome.pool_size == 1
        assert not outcome.aggregation_triggered
        assert (await coordinator.get_status())['current_version'] == 0

    async def test_unsigned_submissions_are_rejected(self):
        coordinator = await start_coordinator(AggregationConfig(), SignatureVerificationGateway())

        unsigned = await coordinator.submit(build_submission("attacker", signature=None))
        forged_hash = await coordinator.submit(build_submission("attacker", weights_hash="deadbeef"))

        assert not unsigned.accepted
        assert not forged_hash.accepted
        assert coordinator.pool_size == 0

    async def test_architecture_switch_after_first_round_is_rejected(self, make_weights):
        coordinator = await start_coordinator(AggregationConfig())
        for i in range(3):
            await coordinator.submit(build_submission(f"honest-{i}"))

        outcome = await coordinator.submit(
            build_submission("attacker", weights=make_weights(1.0, shape=(8, 8), bias_len=8))
        )

        assert not outcome.accepted
        assert "global model" in outcome.reason
