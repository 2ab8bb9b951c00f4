"""
Unit tests for submission intake validation.
"""
import math
import pytest

from src.aggregation_server.errors import SubmissionValidationError
from src.aggregation_server.validation import SubmissionValidator
from src.common.interfaces import LayerWeights, ModelArchitecture, ModelWeights, SubmissionMetrics


@pytest.fixture
def validator():
    return SubmissionValidator()


def weights_with(layers, architecture=None):
    return ModelWeights(
        layers=layers,
        total_parameters=0,
        architecture=architecture or ModelArchitecture(input_dim=2, hidden_layers=[2], output_dim=1),
    )


@pytest.mark.unit
class TestSubmissionValidator:
    """Fail-fast structural checks"""

    def test_valid_submission_passes(self, validator, make_submission):
        assert validator.validate(make_submission()) is None

    def test_missing_participant_id(self, validator, make_submission):
        with pytest.raises(SubmissionValidationError, match="participant"):
            validator.validate(make_submission(participant_id=""))

    @pytest.mark.parametrize("dataset_size", [0, -5, 2.5, True])
    def test_bad_dataset_size(self, validator, make_submission, dataset_size):
        with pytest.raises(SubmissionValidationError, match="dataset size"):
            validator.validate(make_submission(dataset_size=dataset_size))

    @pytest.mark.parametrize("metrics", [
        SubmissionMetrics(loss=math.nan, mae=0.1, accuracy=0.5),
        SubmissionMetrics(loss=0.1, mae=math.inf, accuracy=0.5),
        SubmissionMetrics(loss=0.1, mae=0.1, accuracy=1.5),
        SubmissionMetrics(loss=0.1, mae=0.1, accuracy=-0.1),
    ])
    def test_bad_metrics(self, validator, make_submission, metrics):
        with pytest.raises(SubmissionValidationError):
            validator.validate(make_submission(metrics=metrics))

    def test_missing_architecture(self, validator, make_submission):
        weights = ModelWeights(layers=[LayerWeights("dense", [[[1.0]]], [[0.0]])], total_parameters=2,
                               architecture=None)

        with pytest.raises(SubmissionValidationError, match="architecture"):
            validator.validate(make_submission(weights=weights))

    def test_non_positive_architecture_dims(self, validator, make_submission):
        weights = weights_with(
            [LayerWeights("dense", [[[1.0]]], [[0.0]])],
            ModelArchitecture(input_dim=0, hidden_layers=[], output_dim=1),
        )

        with pytest.raises(SubmissionValidationError, match="dimensions"):
            validator.validate(make_submission(weights=weights))

    def test_no_layers(self, validator, make_submission):
        with pytest.raises(SubmissionValidationError, match="no layers"):
            validator.validate(make_submission(weights=weights_with([])))

    def test_layer_without_parameters(self, validator, make_submission):
        with pytest.raises(SubmissionValidationError, match="no weights or biases"):
            validator.validate(make_submission(weights=weights_with([LayerWeights("dense", [], [])])))

    def test_ragged_matrix(self, validator, make_submission):
        layer = LayerWeights("dense", weights=[[[1.0, 2.0], [3.0]]], biases=[[0.0, 0.0]])

        with pytest.raises(SubmissionValidationError, match="ragged"):
            validator.validate(make_submission(weights=weights_with([layer])))

    @pytest.mark.parametrize("bad_value", [math.nan, math.inf, -math.inf])
    def test_non_finite_weight(self, validator, make_submission, bad_value):
        layer = LayerWeights("dense", weights=[[[1.0, bad_value]]], biases=[[0.0, 0.0]])

        with pytest.raises(SubmissionValidationError, match="non-finite"):
            validator.validate(make_submission(weights=weights_with([layer])))

    def test_non_finite_bias(self, validator, make_submission):
        layer = LayerWeights("dense", weights=[[[1.0]]], biases=[[math.nan]])

        with pytest.raises(SubmissionValidationError, match="non-finite"):
            validator.validate(make_submission(weights=weights_with([layer])))

    def test_zero_row_matrix_is_accepted(self, validator, make_submission):
        layer = LayerWeights("dense", weights=[[]], biases=[[0.5]])

        assert validator.validate(make_submission(weights=weights_with([layer]))) is None

    def test_reference_shape_must_match(self, validator, make_submission, make_weights):
        reference = make_weights(0.0, shape=(2, 2))

        assert validator.validate(make_submission(weights=make_weights(1.0, shape=(2, 2))), reference) is None
        with pytest.raises(SubmissionValidationError, match="global model"):
            validator.validate(make_submission(weights=make_weights(1.0, shape=(3, 2))), reference)

    @pytest.mark.parametrize("layer", [
        LayerWeights("dense", weights=[[1.0, 2.0]], biases=[[0.0]]),
        LayerWeights("dense", weights=[[1.0, [2.0]]], biases=[[0.0]]),
        LayerWeights("dense", weights=[[[1.0]]], biases=[0.5]),
        LayerWeights("dense", weights="1.0", biases=[[0.0]]),
    ], ids=["matrix-of-scalars", "mixed-rows", "scalar-bias", "string-weights"])
    def test_non_list_nesting_is_rejected(self, validator, make_submission, layer):
        with pytest.raises(SubmissionValidationError, match="must be (a list|lists)"):
            validator.validate(make_submission(weights=weights_with([layer])))
