"""
Base interfaces and data records shared by the aggregation core
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple


def utc_now() -> datetime:
    """Timezone-aware current time"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO strings, epoch seconds or browser epoch milliseconds"""
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Browser clients send Date.now() milliseconds
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _matrix_shape(matrix: List[List[float]]) -> Tuple[int, int]:
    rows = len(matrix)
    cols = len(matrix[0]) if rows else 0
    return rows, cols


class AggregationAlgorithm(Enum):
    """Aggregation algorithms offered by the core"""
    FEDAVG = "fedavg"
    WEIGHTED_FEDAVG = "weighted-fedavg"
    MEDIAN = "median"


class WeightingStrategy(Enum):
    """Per-submission weighting used by FedAvg"""
    EQUAL = "equal"
    ACCURACY = "accuracy"
    DATASET_SIZE = "dataset-size"


class OutlierMethod(Enum):
    """Reference population a submission is scored against"""
    LEAVE_ONE_OUT = "leave-one-out"
    POPULATION = "population"


@dataclass
class ModelArchitecture:
    """Network architecture a set of weights was produced under"""
    input_dim: int
    hidden_layers: List[int]
    output_dim: int
    activation: str = "relu"
    optimizer: str = "adam"
    loss: str = "meanSquaredError"
    metrics: List[str] = field(default_factory=lambda: ["mae", "mse"])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ModelArchitecture':
        return cls(
            input_dim=data['input_dim'],
            hidden_layers=list(data.get('hidden_layers', [])),
            output_dim=data['output_dim'],
            activation=data.get('activation', 'relu'),
            optimizer=data.get('optimizer', 'adam'),
            loss=data.get('loss', 'meanSquaredError'),
            metrics=list(data.get('metrics', ['mae', 'mse'])),
        )


@dataclass
class LayerWeights:
    """One named layer: weight matrices (rank 3) and bias vectors (rank 2)"""
    name: str
    weights: List[List[List[float]]] = field(default_factory=list)
    biases: List[List[float]] = field(default_factory=list)

    def shape_signature(self) -> Tuple:
        return (
            self.name,
            tuple(_matrix_shape(m) for m in self.weights),
            tuple(len(b) for b in self.biases),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerWeights':
        return cls(
            name=data['name'],
            weights=data.get('weights', []),
            biases=data.get('biases', []),
        )


@dataclass
class ModelWeights:
    """Serializable model parameters"""
    layers: List[LayerWeights]
    total_parameters: int
    architecture: Optional[ModelArchitecture]

    def shape_signature(self) -> Tuple:
        """Hashable description of layer names and tensor shapes"""
        return tuple(layer.shape_signature() for layer in self.layers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'layers': [layer.to_dict() for layer in self.layers],
            'total_parameters': self.total_parameters,
            'architecture': self.architecture.to_dict() if self.architecture else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ModelWeights':
        architecture = data.get('architecture')
        return cls(
            layers=[LayerWeights.from_dict(layer) for layer in data.get('layers', [])],
            total_parameters=data.get('total_parameters', 0),
            architecture=ModelArchitecture.from_dict(architecture) if architecture else None,
        )


@dataclass(frozen=True)
class SubmissionMetrics:
    """Local training metrics reported with a submission"""
    loss: float
    mae: float
    accuracy: float


@dataclass(frozen=True)
class ModelSubmission:
    """One participant's model update for a round"""
    participant_id: str
    model_weights: ModelWeights
    weights_hash: str
    metrics: SubmissionMetrics
    dataset_size: int
    round: int
    model_version: int
    timestamp: datetime = field(default_factory=utc_now)
    signature: Optional[str] = None
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'participant_id': self.participant_id,
            'model_weights': self.model_weights.to_dict(),
            'weights_hash': self.weights_hash,
            'metrics': asdict(self.metrics),
            'dataset_size': self.dataset_size,
            'round': self.round,
            'model_version': self.model_version,
            'timestamp': self.timestamp.isoformat(),
            'signature': self.signature,
            'tx_hash': self.tx_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ModelSubmission':
        metrics = data['metrics']
        return cls(
            participant_id=data['participant_id'],
            model_weights=ModelWeights.from_dict(data['model_weights']),
            weights_hash=data.get('weights_hash', ''),
            metrics=SubmissionMetrics(
                loss=float(metrics['loss']),
                mae=float(metrics['mae']),
                accuracy=float(metrics['accuracy']),
            ),
            dataset_size=data['dataset_size'],
            round=data.get('round', 1),
            model_version=data.get('model_version', 0),
            timestamp=parse_timestamp(data.get('timestamp')),
            signature=data.get('signature'),
            tx_hash=data.get('tx_hash'),
        )


@dataclass(frozen=True)
class AggregationConfig:
    """Immutable aggregation settings for one coordinator"""
    algorithm: AggregationAlgorithm = AggregationAlgorithm.WEIGHTED_FEDAVG
    min_submissions: int = 3
    weighting_strategy: WeightingStrategy = WeightingStrategy.DATASET_SIZE
    outlier_detection: bool = True
    outlier_threshold: float = 2.5
    outlier_method: OutlierMethod = OutlierMethod.LEAVE_ONE_OUT

    def __post_init__(self):
        # Accept raw strings from config files
        object.__setattr__(self, 'algorithm', AggregationAlgorithm(self.algorithm))
        object.__setattr__(self, 'weighting_strategy', WeightingStrategy(self.weighting_strategy))
        object.__setattr__(self, 'outlier_method', OutlierMethod(self.outlier_method))
        if not isinstance(self.min_submissions, int) or self.min_submissions < 1:
            raise ValueError(f"min_submissions must be a positive integer, got {self.min_submissions!r}")
        if self.outlier_threshold <= 0:
            raise ValueError(f"outlier_threshold must be positive, got {self.outlier_threshold!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'algorithm': self.algorithm.value,
            'min_submissions': self.min_submissions,
            'weighting_strategy': self.weighting_strategy.value,
            'outlier_detection': self.outlier_detection,
            'outlier_threshold': self.outlier_threshold,
            'outlier_method': self.outlier_method.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AggregationConfig':
        defaults = cls()
        return cls(
            algorithm=data.get('algorithm', defaults.algorithm),
            min_submissions=data.get('min_submissions', defaults.min_submissions),
            weighting_strategy=data.get('weighting_strategy', defaults.weighting_strategy),
            outlier_detection=data.get('outlier_detection', defaults.outlier_detection),
            outlier_threshold=data.get('outlier_threshold', defaults.outlier_threshold),
            outlier_method=data.get('outlier_method', defaults.outlier_method),
        )


@dataclass(frozen=True)
class AggregationMetrics:
    """Dataset-size weighted metrics of the contributing submissions"""
    average_loss: float
    average_mae: float
    weighted_accuracy: float


@dataclass(frozen=True)
class AggregationResult:
    """Output of one aggregation pass"""
    round: int
    model_version: int
    global_weights: ModelWeights
    num_submissions: int
    participating_farmers: List[str]
    aggregation_metrics: AggregationMetrics
    timestamp: datetime = field(default_factory=utc_now)
    algorithm: str = AggregationAlgorithm.WEIGHTED_FEDAVG.value
    outliers: List[str] = field(default_factory=list)

    def to_dict(self, include_weights: bool = True) -> Dict[str, Any]:
        data = {
            'round': self.round,
            'model_version': self.model_version,
            'num_submissions': self.num_submissions,
            'participating_farmers': list(self.participating_farmers),
            'aggregation_metrics': asdict(self.aggregation_metrics),
            'timestamp': self.timestamp.isoformat(),
            'algorithm': self.algorithm,
            'outliers': list(self.outliers),
        }
        if include_weights:
            data['global_weights'] = self.global_weights.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AggregationResult':
        weights = data.get('global_weights')
        return cls(
            round=data['round'],
            model_version=data['model_version'],
            global_weights=ModelWeights.from_dict(weights) if weights else ModelWeights([], 0, None),
            num_submissions=data['num_submissions'],
            participating_farmers=list(data.get('participating_farmers', [])),
            aggregation_metrics=AggregationMetrics(**data['aggregation_metrics']),
            timestamp=parse_timestamp(data.get('timestamp')),
            algorithm=data.get('algorithm', AggregationAlgorithm.WEIGHTED_FEDAVG.value),
            outliers=list(data.get('outliers', [])),
        )


@dataclass(frozen=True)
class GlobalModelMetadata:
    trained_by: int
    total_samples: int
    average_accuracy: float
    created_at: datetime
    weights_cid: Optional[str] = None


@dataclass(frozen=True)
class PerformanceMetrics:
    global_mae: float
    global_mse: float
    confidence: float


@dataclass(frozen=True)
class GlobalModel:
    """Distributable aggregated model; superseded, never mutated"""
    version: int
    round: int
    weights: ModelWeights
    architecture: Optional[ModelArchitecture]
    metadata: GlobalModelMetadata
    performance_metrics: PerformanceMetrics

    def to_dict(self) -> Dict[str, Any]:
        metadata = asdict(self.metadata)
        metadata['created_at'] = self.metadata.created_at.isoformat()
        return {
            'version': self.version,
            'round': self.round,
            'weights': self.weights.to_dict(),
            'architecture': self.architecture.to_dict() if self.architecture else None,
            'metadata': metadata,
            'performance_metrics': asdict(self.performance_metrics),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GlobalModel':
        metadata = dict(data['metadata'])
        metadata['created_at'] = parse_timestamp(metadata.get('created_at'))
        architecture = data.get('architecture')
        return cls(
            version=data['version'],
            round=data['round'],
            weights=ModelWeights.from_dict(data['weights']),
            architecture=ModelArchitecture.from_dict(architecture) if architecture else None,
            metadata=GlobalModelMetadata(**metadata),
            performance_metrics=PerformanceMetrics(**data['performance_metrics']),
        )


@dataclass
class RoundState:
    """Round/version counters owned by the coordinator"""
    current_round: int = 1
    current_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RoundState':
        return cls(
            current_round=int(data.get('current_round', 1)),
            current_version=int(data.get('current_version', 0)),
        )


@dataclass
class SubmitOutcome:
    """Result of handing one submission to the coordinator"""
    accepted: bool
    pool_size: int
    aggregation_triggered: bool = False
    new_version: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VerificationGateway(ABC):
    """Proof verification collaborator (on-chain / ZK check)"""

    @abstractmethod
    async def verify(self, submission: ModelSubmission) -> bool:
        """Return True if the submission's proof artifacts check out"""
        pass


class BlobStore(ABC):
    """Content-addressed storage for large weight blobs"""

    @abstractmethod
    async def put(self, data: bytes) -> str:
        """Store bytes and return their content identifier"""
        pass

    @abstractmethod
    async def get(self, cid: str) -> bytes:
        """Fetch bytes by content identifier"""
        pass


class GlobalModelStore(ABC):
    """Persistence for the latest global model, counters, pool and history"""

    @abstractmethod
    async def save(self, model: GlobalModel) -> None:
        """Atomically replace the latest global model"""
        pass

    @abstractmethod
    async def load(self) -> Optional[GlobalModel]:
        """Load the latest global model, if any"""
        pass

    @abstractmethod
    async def append_history(self, result: AggregationResult) -> None:
        """Append one aggregation result to the audit log"""
        pass

    @abstractmethod
    async def load_history(self, limit: Optional[int] = None) -> List[AggregationResult]:
        """Load aggregation history, oldest first"""
        pass

    @abstractmethod
    async def save_round_state(self, state: RoundState) -> None:
        pass

    @abstractmethod
    async def load_round_state(self) -> Optional[RoundState]:
        pass

    @abstractmethod
    async def save_pending(self, submissions: List[ModelSubmission]) -> None:
        pass

    @abstractmethod
    async def load_pending(self) -> List[ModelSubmission]:
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every persisted record"""
        pass
