"""
Pydantic models for API request/response validation
"""
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field
from datetime import datetime

from ..common.interfaces import (
    LayerWeights, ModelArchitecture, ModelSubmission, ModelWeights,
    SubmissionMetrics, parse_timestamp
)


class ArchitecturePayload(BaseModel):
    """Network architecture the weights were trained under"""
    input_dim: int
    hidden_layers: List[int] = Field(default_factory=list)
    output_dim: int
    activation: str = "relu"
    optimizer: str = "adam"
    loss: str = "meanSquaredError"
    metrics: List[str] = Field(default_factory=lambda: ["mae", "mse"])


class LayerPayload(BaseModel):
    """One named layer of weights"""
    name: str
    weights: List[List[List[float]]] = Field(default_factory=list, description="Weight matrices")
    biases: List[List[float]] = Field(default_factory=list, description="Bias vectors")


class ModelWeightsPayload(BaseModel):
    """Inline model weights"""
    layers: List[LayerPayload]
    total_parameters: int = 0
    architecture: Optional[ArchitecturePayload] = None

    def to_weights(self) -> ModelWeights:
        return ModelWeights(
            layers=[LayerWeights(name=l.name, weights=l.weights, biases=l.biases) for l in self.layers],
            total_parameters=self.total_parameters,
            architecture=ModelArchitecture(**self.architecture.model_dump()) if self.architecture else None,
        )


class MetricsPayload(BaseModel):
    """Local training metrics"""
    loss: float
    mae: float
    accuracy: float


class SubmissionRequest(BaseModel):
    """Model submission request model"""
    participant_id: str = Field(..., description="Submitting participant")
    model_weights: Optional[ModelWeightsPayload] = Field(None, description="Inline model weights")
    weights_cid: Optional[str] = Field(None, description="Content id of weights in the blob store")
    weights_hash: str = Field("", description="Hash of the serialized weights")
    metrics: MetricsPayload
    dataset_size: int = Field(..., description="Number of local training samples")
    round: int = Field(1, description="Round the participant trained for")
    model_version: int = Field(0, description="Global model version the participant started from")
    timestamp: Optional[Union[datetime, float]] = Field(None, description="ISO time or epoch (ms)")
    signature: Optional[str] = None
    tx_hash: Optional[str] = None

    def to_submission(self, weights: Optional[ModelWeights] = None) -> ModelSubmission:
        if weights is None:
            weights = self.model_weights.to_weights() if self.model_weights else None
        return ModelSubmission(
            participant_id=self.participant_id,
            model_weights=weights,
            weights_hash=self.weights_hash,
            metrics=SubmissionMetrics(
                loss=self.metrics.loss,
                mae=self.metrics.mae,
                accuracy=self.metrics.accuracy,
            ),
            dataset_size=self.dataset_size,
            round=self.round,
            model_version=self.model_version,
            timestamp=parse_timestamp(self.timestamp),
            signature=self.signature,
            tx_hash=self.tx_hash,
        )


class SubmitResponse(BaseModel):
    """Submission outcome"""
    accepted: bool
    pool_size: int
    aggregation_triggered: bool = False
    new_version: Optional[int] = None
    reason: Optional[str] = None


class StatusResponse(BaseModel):
    """Coordinator status"""
    current_round: int
    current_version: int
    pool_size: int
    min_submissions: int
    aggregation_in_progress: bool
    state: str
    global_model_version: Optional[int] = None
    unpersisted_version: Optional[int] = None
    last_aggregation: Optional[str] = None
    algorithm: str
    weighting_strategy: str
    algorithm_info: Dict[str, Any] = Field(default_factory=dict)


class AggregationResponse(BaseModel):
    """Summary of a completed aggregation"""
    round: int
    model_version: int
    num_submissions: int
    participating_farmers: List[str]
    outliers: List[str] = Field(default_factory=list)
    aggregation_metrics: Dict[str, float]
    algorithm: str
    timestamp: str


class HistoryResponse(BaseModel):
    """Aggregation history, oldest first"""
    history: List[AggregationResponse]


class HealthResponse(BaseModel):
    """Health check response model"""
    status: str
    timestamp: datetime
    version: str
    uptime: float
    current_round: int
    pool_size: int
    last_aggregation: Optional[str] = None

