"""
Structural validation of incoming model submissions
"""
import logging
import math
from typing import Optional

from .errors import SubmissionValidationError
from ..common.interfaces import ModelSubmission, ModelWeights

logger = logging.getLogger(__name__)


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class SubmissionValidator:
    """Fail-fast intake checks run before a submission may enter the pool"""

    def validate(self, submission: ModelSubmission, reference: Optional[ModelWeights] = None) -> None:
        """Raise SubmissionValidationError on the first failed check.

        When ``reference`` is given (normally the current global model) the
        submission's layer names and tensor shapes must match it exactly.
        """
        participant_id = submission.participant_id

        if not participant_id:
            raise SubmissionValidationError(participant_id, "missing participant id")

        if isinstance(submission.dataset_size, bool) or not isinstance(submission.dataset_size, int):
            raise SubmissionValidationError(participant_id, f"dataset size must be an integer, got {submission.dataset_size!r}")
        if submission.dataset_size <= 0:
            raise SubmissionValidationError(participant_id, f"dataset size must be positive, got {submission.dataset_size}")

        self._validate_metrics(submission)
        self._validate_weights(participant_id, submission.model_weights)

        if reference is not None and submission.model_weights.shape_signature() != reference.shape_signature():
            raise SubmissionValidationError(participant_id, "model shapes do not match the current global model")

        logger.debug(f"Submission from {participant_id} passed validation")

    def _validate_metrics(self, submission: ModelSubmission):
        metrics = submission.metrics
        for name in ('loss', 'mae', 'accuracy'):
            value = getattr(metrics, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise SubmissionValidationError(submission.participant_id, f"metric '{name}' is not finite: {value!r}")

        if not 0.0 <= metrics.accuracy <= 1.0:
            raise SubmissionValidationError(
                submission.participant_id, f"accuracy must be within [0, 1], got {metrics.accuracy}"
            )

    def _validate_weights(self, participant_id: str, weights: ModelWeights):
        if weights is None:
            raise SubmissionValidationError(participant_id, "missing model weights")

        architecture = weights.architecture
        if architecture is None:
            raise SubmissionValidationError(participant_id, "missing model architecture")
        if not _is_positive_int(architecture.input_dim) or not _is_positive_int(architecture.output_dim):
            raise SubmissionValidationError(participant_id, "architecture dimensions must be positive integers")
        if not isinstance(architecture.hidden_layers, list) or not all(
                _is_positive_int(units) for units in architecture.hidden_layers):
            raise SubmissionValidationError(participant_id, "hidden layer sizes must be positive integers")

        if not isinstance(weights.layers, list) or not weights.layers:
            raise SubmissionValidationError(participant_id, "model has no layers")

        for layer in weights.layers:
            if not isinstance(layer.weights, list) or not isinstance(layer.biases, list):
                raise SubmissionValidationError(
                    participant_id, f"layer '{layer.name}' weights and biases must be lists"
                )
            if not layer.weights and not layer.biases:
                raise SubmissionValidationError(participant_id, f"layer '{layer.name}' has no weights or biases")

            for index, matrix in enumerate(layer.weights):
                if not isinstance(matrix, list):
                    raise SubmissionValidationError(
                        participant_id, f"layer '{layer.name}' weight matrix {index} must be a list of rows"
                    )
                if not matrix:
                    # An empty matrix has zero rows and therefore zero columns
                    continue
                if not all(isinstance(row, list) for row in matrix):
                    raise SubmissionValidationError(
                        participant_id, f"layer '{layer.name}' weight matrix {index} rows must be a list of values"
                    )
                cols = len(matrix[0])
                for row in matrix:
                    if len(row) != cols:
                        raise SubmissionValidationError(
                            participant_id,
                            f"layer '{layer.name}' weight matrix {index} is ragged "
                            f"(expected {cols} columns, found {len(row)})"
                        )
                    self._check_finite(participant_id, layer.name, row)

            for index, bias in enumerate(layer.biases):
                if not isinstance(bias, list):
                    raise SubmissionValidationError(
                        participant_id, f"layer '{layer.name}' bias vector {index} must be a list of values"
                    )
                self._check_finite(participant_id, layer.name, bias)

    def _check_finite(self, participant_id: str, layer_name: str, values):
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise SubmissionValidationError(
                    participant_id, f"layer '{layer_name}' contains a non-finite value: {value!r}"
                )
