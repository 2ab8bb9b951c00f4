"""
Prometheus metrics collection for the federated aggregation core.
Tracks submission intake, aggregation outcomes, outlier screening and round progress.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
from typing import Optional
import threading


class FederatedLearningMetrics:
    """Custom metrics collector for the aggregation core."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, component: str = "aggregation_server"):
        self.registry = registry or CollectorRegistry()
        self.component = component
        self._setup_metrics()
        self._lock = threading.Lock()

    def _setup_metrics(self):
        """Initialize all Prometheus metrics."""

        # Submission intake
        self.submissions = Counter(
            'fl_submissions_total',
            'Model submissions received, by intake status',
            ['component', 'status'],
            registry=self.registry
        )

        self.pool_size = Gauge(
            'fl_pending_pool_size',
            'Submissions waiting for the next aggregation',
            ['component'],
            registry=self.registry
        )

        # Aggregation
        self.aggregations = Counter(
            'fl_aggregations_total',
            'Aggregation attempts, by outcome',
            ['component', 'outcome'],
            registry=self.registry
        )

        self.aggregation_duration = Histogram(
            'fl_aggregation_duration_seconds',
            'Time spent aggregating one round',
            ['component', 'algorithm'],
            registry=self.registry
        )

        self.outliers = Counter(
            'fl_outliers_detected_total',
            'Submissions screened out as statistical outliers',
            ['component'],
            registry=self.registry
        )

        # Round progress
        self.current_round = Gauge(
            'fl_current_round',
            'Round currently collecting submissions',
            ['component'],
            registry=self.registry
        )

        self.model_version = Gauge(
            'fl_global_model_version',
            'Version of the latest persisted global model',
            ['component'],
            registry=self.registry
        )

        self.model_accuracy = Gauge(
            'fl_model_accuracy',
            'Weighted accuracy of the latest global model',
            ['component'],
            registry=self.registry
        )

    def record_submission(self, status: str):
        """Record one submission by intake status."""
        with self._lock:
            self.submissions.labels(component=self.component, status=status).inc()

    def update_pool_size(self, size: int):
        self.pool_size.labels(component=self.component).set(size)

    def record_aggregation(self, outcome: str, algorithm: str, duration: Optional[float] = None):
        """Record an aggregation attempt and, when known, its duration."""
        with self._lock:
            self.aggregations.labels(component=self.component, outcome=outcome).inc()
            if duration is not None:
                self.aggregation_duration.labels(
                    component=self.component, algorithm=algorithm
                ).observe(duration)

    def record_outliers(self, count: int):
        if count > 0:
            self.outliers.labels(component=self.component).inc(count)

    def update_round_state(self, current_round: int, model_version: int, accuracy: Optional[float] = None):
        """Update round and version gauges after a round completes."""
        self.current_round.labels(component=self.component).set(current_round)
        self.model_version.labels(component=self.component).set(model_version)
        if accuracy is not None:
            self.model_accuracy.labels(component=self.component).set(accuracy)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self.registry)


# Global metrics instance
_metrics_instance = None
_metrics_lock = threading.Lock()


def get_metrics() -> FederatedLearningMetrics:
    """Get global metrics instance (singleton)."""
    global _metrics_instance
    if _metrics_instance is None:
        with _metrics_lock:
            if _metrics_instance is None:
                _metrics_instance = FederatedLearningMetrics()
    return _metrics_instance


def initialize_metrics(registry: Optional[CollectorRegistry] = None) -> FederatedLearningMetrics:
    """Initialize metrics with custom registry."""
    global _metrics_instance
    with _metrics_lock:
        _metrics_instance = FederatedLearningMetrics(registry)
    return _metrics_instance
