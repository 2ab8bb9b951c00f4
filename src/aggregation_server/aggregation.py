"""
Federated learning aggregation algorithms
"""
import logging
import numpy as np
from typing import List, Dict, Any, Optional
from abc import ABC, abstractmethod

from .errors import InsufficientSubmissionsError, ShapeMismatchError
from ..common.interfaces import (
    AggregationAlgorithm, AggregationConfig, AggregationMetrics, AggregationResult,
    GlobalModel, GlobalModelMetadata, LayerWeights, ModelSubmission, ModelWeights,
    PerformanceMetrics, WeightingStrategy, utc_now
)

logger = logging.getLogger(__name__)


def compute_normalized_weights(submissions: List[ModelSubmission], strategy: WeightingStrategy) -> np.ndarray:
    """Per-submission coefficients summing to 1.

    Falls back to equal weights when the raw total is zero, e.g. every
    participant reporting 0 accuracy under the accuracy strategy.
    """
    strategy = WeightingStrategy(strategy)
    if not submissions:
        return np.zeros(0, dtype=np.float64)

    if strategy == WeightingStrategy.DATASET_SIZE:
        raw = [s.dataset_size for s in submissions]
    elif strategy == WeightingStrategy.ACCURACY:
        raw = [s.metrics.accuracy for s in submissions]
    else:
        raw = [1.0] * len(submissions)

    raw = np.asarray(raw, dtype=np.float64)
    total = raw.sum()

    if total <= 0:
        # Fallback to simple average
        logger.warning(f"Weight total is {total} under '{strategy.value}' weighting, using equal weights")
        return np.full(len(submissions), 1.0 / len(submissions))

    return raw / total


class BaseAggregationAlgorithm(ABC):
    """Abstract base class for aggregation algorithms"""

    def __init__(self, config: AggregationConfig):
        self.config = config

    @abstractmethod
    def combine(self, stacked: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """Reduce a (num_submissions, ...) stack along its first axis"""
        pass

    @abstractmethod
    def get_algorithm_name(self) -> str:
        """Get algorithm name"""
        pass

    def aggregate(self, submissions: List[ModelSubmission]) -> List[LayerWeights]:
        """Combine every weight matrix and bias vector coordinate-wise"""
        weights = compute_normalized_weights(submissions, self.config.weighting_strategy)
        reference = submissions[0].model_weights

        aggregated = []
        for layer_index, layer in enumerate(reference.layers):
            peers = [s.model_weights.layers[layer_index] for s in submissions]

            matrices = []
            for matrix_index in range(len(layer.weights)):
                stacked = np.array([p.weights[matrix_index] for p in peers], dtype=np.float64)
                matrices.append(self._reduce(stacked, weights).tolist())

            biases = []
            for bias_index in range(len(layer.biases)):
                stacked = np.array([p.biases[bias_index] for p in peers], dtype=np.float64)
                biases.append(self._reduce(stacked, weights).tolist())

            aggregated.append(LayerWeights(name=layer.name, weights=matrices, biases=biases))

        return aggregated

    def _reduce(self, stacked: np.ndarray, weights: np.ndarray) -> np.ndarray:
        if stacked.size == 0:
            # Zero-row or zero-column tensors keep their (empty) shape
            return np.zeros(stacked.shape[1:], dtype=np.float64)
        return self.combine(stacked, weights)


class WeightedFedAvgAggregator(BaseAggregationAlgorithm):
    """Federated Averaging (FedAvg) with normalized per-submission weights"""

    def __init__(self, config: AggregationConfig):
        super().__init__(config)
        self.algorithm_name = "FedAvg"

    def combine(self, stacked: np.ndarray, weights: np.ndarray) -> np.ndarray:
        # Weighted sum over the submission axis, accumulated in float64
        return np.tensordot(weights, stacked, axes=1)

    def get_algorithm_name(self) -> str:
        return self.algorithm_name


class MedianAggregator(BaseAggregationAlgorithm):
    """Coordinate-wise median; ignores weighting"""

    def __init__(self, config: AggregationConfig):
        super().__init__(config)
        self.algorithm_name = "Median"

    def combine(self, stacked: np.ndarray, weights: np.ndarray) -> np.ndarray:
        # Even counts average the two middle values
        return np.median(stacked, axis=0)

    def get_algorithm_name(self) -> str:
        return self.algorithm_name


class AggregatorFactory:
    """Factory for creating aggregation algorithms"""

    _algorithms = {
        AggregationAlgorithm.FEDAVG: WeightedFedAvgAggregator,
        AggregationAlgorithm.WEIGHTED_FEDAVG: WeightedFedAvgAggregator,
        AggregationAlgorithm.MEDIAN: MedianAggregator,
    }

    @classmethod
    def create_aggregator(cls, config: AggregationConfig) -> BaseAggregationAlgorithm:
        """Create aggregator instance"""
        try:
            algorithm = AggregationAlgorithm(config.algorithm)
        except ValueError:
            raise ValueError(f"Unknown aggregation algorithm: {config.algorithm}")

        return cls._algorithms[algorithm](config)

    @classmethod
    def get_available_algorithms(cls) -> List[str]:
        """Get list of available algorithms"""
        return [algorithm.value for algorithm in cls._algorithms]


def weighted_metrics(submissions: List[ModelSubmission]) -> AggregationMetrics:
    """Dataset-size weighted loss, MAE and accuracy"""
    sizes = np.array([s.dataset_size for s in submissions], dtype=np.float64)
    total = sizes.sum()
    if total <= 0:
        sizes = np.ones(len(submissions))
        total = float(len(submissions))

    def _average(values: List[float]) -> float:
        return float(np.dot(sizes, np.asarray(values, dtype=np.float64)) / total)

    return AggregationMetrics(
        average_loss=_average([s.metrics.loss for s in submissions]),
        average_mae=_average([s.metrics.mae for s in submissions]),
        weighted_accuracy=_average([s.metrics.accuracy for s in submissions]),
    )


class FederatedAggregator:
    """Main aggregator class that uses the selected algorithm"""

    def __init__(self, config: AggregationConfig):
        self.config = config
        self.algorithm = AggregatorFactory.create_aggregator(config)

    def aggregate(self, submissions: List[ModelSubmission]) -> ModelWeights:
        """Aggregate submissions into one set of model weights"""
        if not submissions:
            raise InsufficientSubmissionsError(0, 1)

        logger.info(
            f"Aggregating {len(submissions)} submissions using {self.algorithm.get_algorithm_name()} "
            f"({self.config.weighting_strategy.value} weighting)"
        )

        self._validate_shapes(submissions)

        reference = submissions[0].model_weights
        layers = self.algorithm.aggregate(submissions)

        return ModelWeights(
            layers=layers,
            total_parameters=reference.total_parameters,
            architecture=reference.architecture,
        )

    def build_result(self, submissions: List[ModelSubmission], outliers: Optional[List[str]],
                     round: int, current_version: int) -> AggregationResult:
        """Aggregate and wrap the weights with round bookkeeping and metrics"""
        global_weights = self.aggregate(submissions)

        return AggregationResult(
            round=round,
            model_version=current_version + 1,
            global_weights=global_weights,
            num_submissions=len(submissions),
            participating_farmers=[s.participant_id for s in submissions],
            aggregation_metrics=weighted_metrics(submissions),
            timestamp=utc_now(),
            algorithm=self.config.algorithm.value,
            outliers=list(outliers or []),
        )

    def _validate_shapes(self, submissions: List[ModelSubmission]):
        """Every submission must match the first one layer for layer"""
        expected = submissions[0].model_weights.shape_signature()

        for submission in submissions[1:]:
            actual = submission.model_weights.shape_signature()
            if actual == expected:
                continue

            detail = self._describe_mismatch(expected, actual)
            logger.error(f"Shape mismatch from {submission.participant_id}: {detail}")
            raise ShapeMismatchError(submission.participant_id, detail)

    @staticmethod
    def _describe_mismatch(expected, actual) -> str:
        if len(expected) != len(actual):
            return f"expected {len(expected)} layers, got {len(actual)}"
        for want, got in zip(expected, actual):
            if want != got:
                return f"layer '{got[0]}' has shape {got[1:]}, expected '{want[0]}' with {want[1:]}"
        return "shape signature differs"

    def get_algorithm_info(self) -> Dict[str, Any]:
        """Get information about current algorithm"""
        return {
            'name': self.algorithm.get_algorithm_name(),
            'algorithm': self.config.algorithm.value,
            'weighting_strategy': self.config.weighting_strategy.value,
            'available_algorithms': AggregatorFactory.get_available_algorithms()
        }


def create_global_model(result: AggregationResult, submissions: List[ModelSubmission],
                        weights_cid: Optional[str] = None) -> GlobalModel:
    """Wrap an aggregation result into the distributable global model"""
    metrics = result.aggregation_metrics

    return GlobalModel(
        version=result.model_version,
        round=result.round,
        weights=result.global_weights,
        architecture=result.global_weights.architecture,
        metadata=GlobalModelMetadata(
            trained_by=result.num_submissions,
            total_samples=sum(s.dataset_size for s in submissions),
            average_accuracy=metrics.weighted_accuracy,
            created_at=utc_now(),
            weights_cid=weights_cid,
        ),
        performance_metrics=PerformanceMetrics(
            global_mae=metrics.average_mae,
            global_mse=metrics.average_loss,
            confidence=metrics.weighted_accuracy,
        ),
    )
