"""
Statistical outlier screening of submissions before aggregation
"""
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Tuple

import numpy as np

from ..common.interfaces import ModelSubmission, OutlierMethod

logger = logging.getLogger(__name__)

# Need at least 3 samples for meaningful statistics
MIN_SAMPLES = 3

# Standard deviations below this are treated as zero spread
_STD_EPSILON = 1e-12


@dataclass
class OutlierReport:
    """Partition of a submission set into kept and screened-out entries"""
    valid: List[ModelSubmission]
    outliers: List[ModelSubmission] = field(default_factory=list)
    # participant_id -> (loss z-score, accuracy z-score)
    scores: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    @property
    def outlier_ids(self) -> List[str]:
        return [s.participant_id for s in self.outliers]


def _z_score(value: float, reference: np.ndarray) -> float:
    mean_val = np.mean(reference)
    std_val = np.std(reference)
    if std_val <= _STD_EPSILON * max(1.0, abs(mean_val)):
        return 0.0
    return float(abs((value - mean_val) / std_val))


def compute_z_scores(values: np.ndarray, method: OutlierMethod) -> np.ndarray:
    """Absolute z-score of every value against its reference population"""
    values = np.asarray(values, dtype=np.float64)
    if method == OutlierMethod.POPULATION:
        return np.array([_z_score(v, values) for v in values])

    scores = np.zeros(len(values))
    for i, value in enumerate(values):
        scores[i] = _z_score(value, np.delete(values, i))
    return scores


class OutlierDetector:
    """Z-score screen on reported loss and accuracy"""

    def __init__(self, method: OutlierMethod = OutlierMethod.LEAVE_ONE_OUT):
        self.method = OutlierMethod(method)

    def detect(self, submissions: List[ModelSubmission], threshold: float = 2.5) -> OutlierReport:
        """Flag submissions whose loss or accuracy z-score exceeds ``threshold``.

        Both directions count: an implausibly good accuracy is flagged the same
        way as an implausibly bad one. Input order is preserved in both lists.
        """
        if len(submissions) < MIN_SAMPLES:
            logger.info(f"Skipping outlier detection: {len(submissions)} submissions, need {MIN_SAMPLES}")
            return OutlierReport(valid=list(submissions))

        losses = np.array([s.metrics.loss for s in submissions], dtype=np.float64)
        accuracies = np.array([s.metrics.accuracy for s in submissions], dtype=np.float64)

        loss_z = compute_z_scores(losses, self.method)
        accuracy_z = compute_z_scores(accuracies, self.method)

        report = OutlierReport(valid=[])
        for submission, lz, az in zip(submissions, loss_z, accuracy_z):
            report.scores[submission.participant_id] = (float(lz), float(az))
            logger.info(
                f"Outlier scores for {submission.participant_id}: "
                f"loss z-score: {lz:.2f}, accuracy z-score: {az:.2f}"
            )

            if lz > threshold or az > threshold:
                feature = 'loss' if lz > threshold else 'accuracy'
                logger.warning(
                    f"Statistical outlier detected: {submission.participant_id}, "
                    f"feature: {feature}, z-score: {max(lz, az):.2f}"
                )
                report.outliers.append(submission)
            else:
                report.valid.append(submission)

        if report.outliers:
            logger.info(f"Outlier detection removed {len(report.outliers)} of {len(submissions)} submissions")

        return report
