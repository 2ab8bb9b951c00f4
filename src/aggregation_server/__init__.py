"""
Aggregation Server Package

This package implements the aggregation core for federated learning.
It provides:
- Intake validation and proof verification of model submissions
- Z-score outlier screening on reported loss and accuracy
- Weighted FedAvg and coordinate-wise median aggregation
- Round coordination with rollback on failure
- Global model storage with an aggregation history log
- FastAPI-based REST server with health checks and metrics
"""

from .aggregation import (
    AggregatorFactory, FederatedAggregator, compute_normalized_weights, create_global_model
)
from .coordinator import CoordinatorState, RoundCoordinator
from .errors import (
    AggregationCoreError, AggregationError, BlobNotFoundError, InsufficientSubmissionsError,
    ShapeMismatchError, StoreUnavailableError, SubmissionValidationError, VerificationFailedError
)
from .outliers import OutlierDetector, OutlierReport
from .storage import FileModelStore, InMemoryModelStore, create_model_store
from .validation import SubmissionValidator
from .verification import SignatureVerificationGateway, verify_with_timeout
from .blob_store import FileBlobStore, InMemoryBlobStore

__all__ = [
    'AggregatorFactory',
    'FederatedAggregator',
    'compute_normalized_weights',
    'create_global_model',
    'CoordinatorState',
    'RoundCoordinator',
    'AggregationCoreError',
    'AggregationError',
    'BlobNotFoundError',
    'InsufficientSubmissionsError',
    'ShapeMismatchError',
    'StoreUnavailableError',
    'SubmissionValidationError',
    'VerificationFailedError',
    'OutlierDetector',
    'OutlierReport',
    'FileModelStore',
    'InMemoryModelStore',
    'create_model_store',
    'SubmissionValidator',
    'SignatureVerificationGateway',
    'verify_with_timeout',
    'FileBlobStore',
    'InMemoryBlobStore',
]
