"""
Error taxonomy for the aggregation core
"""
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..common.interfaces import GlobalModel, AggregationResult


class AggregationCoreError(Exception):
    """Base class for every error raised by the core"""
    pass


class SubmissionValidationError(AggregationCoreError):
    """Malformed submission, rejected at intake"""

    def __init__(self, participant_id: str, message: str):
        self.participant_id = participant_id
        super().__init__(f"Invalid submission from {participant_id or '<unknown>'}: {message}")


class VerificationFailedError(AggregationCoreError):
    """Proof verification failed or timed out"""

    def __init__(self, participant_id: str, reason: str = "verification failed"):
        self.participant_id = participant_id
        self.reason = reason
        super().__init__(f"Verification failed for {participant_id}: {reason}")


class AggregationError(AggregationCoreError):
    """Failure of one aggregation attempt; round state is rolled back"""
    retryable = False


class InsufficientSubmissionsError(AggregationError):
    """Fewer usable submissions than the configured minimum"""
    retryable = True

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Not enough submissions ({available} < {required})")


class ShapeMismatchError(AggregationError):
    """Submissions with diverging architectures reached the aggregator"""

    def __init__(self, participant_id: str, detail: str):
        self.participant_id = participant_id
        super().__init__(f"Shape mismatch for {participant_id}: {detail}")


class StoreUnavailableError(AggregationError):
    """Persistence failed after a successful aggregation"""
    retryable = True

    def __init__(self, message: str,
                 model: Optional['GlobalModel'] = None,
                 result: Optional['AggregationResult'] = None):
        self.model = model
        self.result = result
        super().__init__(message)


class BlobNotFoundError(AggregationCoreError):
    """Unknown content identifier"""

    def __init__(self, cid: str):
        self.cid = cid
        super().__init__(f"Blob not found: {cid}")
