"""
Round coordination: submission pool, aggregation trigger and round/version counters
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any

from .aggregation import FederatedAggregator, create_global_model
from .blob_store import serialize_weights
from .errors import (
    AggregationError, InsufficientSubmissionsError, ShapeMismatchError,
    StoreUnavailableError, SubmissionValidationError, VerificationFailedError
)
from .outliers import OutlierDetector
from .validation import SubmissionValidator
from .verification import verify_with_timeout
from ..common.interfaces import (
    AggregationConfig, AggregationResult, BlobStore, GlobalModel, GlobalModelStore,
    ModelSubmission, RoundState, SubmitOutcome, VerificationGateway, utc_now
)

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    IDLE = "idle"
    AGGREGATING = "aggregating"
    AWAITING_PERSISTENCE = "awaiting_persistence"


@dataclass
class _UnpersistedAggregation:
    """An aggregation whose global model has not reached the store yet"""
    result: AggregationResult
    contributors: List[ModelSubmission]
    snapshot: Dict[str, ModelSubmission]
    model: Optional[GlobalModel] = None


class RoundCoordinator:
    """Owns the pending pool and round counters for one service instance.

    Submissions are validated and verified without holding the lock; only the
    pool insert, the threshold check and the snapshot-and-swap are serialized.
    The aggregation arithmetic runs in a worker thread so intake keeps flowing
    into a fresh pool while a round is being aggregated.
    """

    def __init__(self, config: AggregationConfig,
                 verification_gateway: VerificationGateway,
                 store: GlobalModelStore,
                 blob_store: Optional[BlobStore] = None,
                 metrics=None,
                 verification_timeout: float = 10.0,
                 save_retries: int = 3,
                 retry_backoff: float = 0.5):
        self.config = config
        self.verification_gateway = verification_gateway
        self.store = store
        self.blob_store = blob_store
        self.metrics = metrics
        self.verification_timeout = verification_timeout
        self.save_retries = save_retries
        self.retry_backoff = retry_backoff

        # Core components
        self.validator = SubmissionValidator()
        self.outlier_detector = OutlierDetector(config.outlier_method)
        self.aggregator = FederatedAggregator(config)

        # State management
        self.round_state = RoundState()
        self.global_model: Optional[GlobalModel] = None
        self.pending: Dict[str, ModelSubmission] = {}
        self.state = CoordinatorState.IDLE
        self.aggregation_in_progress = False
        self.last_aggregation_time: Optional[datetime] = None

        self._unpersisted: Optional[_UnpersistedAggregation] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Restore counters, the latest model and the pending pool from the store"""
        logger.info("Initializing round coordinator...")

        state = await self.store.load_round_state()
        model = await self.store.load()
        pending = await self.store.load_pending()

        if state is not None:
            self.round_state = state

        if model is not None:
            self.global_model = model
            if model.version > self.round_state.current_version:
                # The model was saved but the counters were not
                logger.warning(
                    f"Round state (v{self.round_state.current_version}) is behind the stored "
                    f"model (v{model.version}), reconciling counters"
                )
                self.round_state = RoundState(current_round=model.round + 1, current_version=model.version)

        self.pending = {s.participant_id: s for s in pending}

        self._update_gauges()
        logger.info(
            f"Round coordinator initialized: round {self.round_state.current_round}, "
            f"version {self.round_state.current_version}, {len(self.pending)} pending submissions"
        )

    async def shutdown(self):
        """Persist the pending pool and counters"""
        logger.info("Shutting down round coordinator...")

        async with self._lock:
            pending = list(self.pending.values())
            if self._unpersisted is not None:
                # Unpersisted contributors go back to the pool so they survive a restart
                merged = dict(self._unpersisted.snapshot)
                merged.update(self.pending)
                pending = list(merged.values())
            state = RoundState(self.round_state.current_round, self.round_state.current_version)

        try:
            await self.store.save_pending(pending)
            await self.store.save_round_state(state)
        except StoreUnavailableError as e:
            logger.error(f"Failed to persist coordinator state on shutdown: {e}")

        logger.info(f"Round coordinator shutdown complete ({len(pending)} pending submissions saved)")

    @property
    def pool_size(self) -> int:
        return len(self.pending)

    async def submit(self, submission: ModelSubmission) -> SubmitOutcome:
        """Admit one submission and trigger aggregation once the pool is full"""
        participant_id = submission.participant_id
        logger.info(f"Received submission from {participant_id} for round {submission.round}")

        try:
            reference = self.global_model.weights if self.global_model else None
            self.validator.validate(submission, reference)
        except SubmissionValidationError as e:
            logger.warning(str(e))
            self._record_submission('invalid')
            return SubmitOutcome(accepted=False, pool_size=self.pool_size, reason=str(e))

        # Verification is the slow path and must not hold the pool lock
        verified = await verify_with_timeout(self.verification_gateway, submission, self.verification_timeout)
        if not verified:
            error = VerificationFailedError(participant_id)
            logger.warning(str(error))
            self._record_submission('unverified')
            return SubmitOutcome(accepted=False, pool_size=self.pool_size, reason=str(error))

        async with self._lock:
            # Pool and global model may have moved on during verification
            mismatch = self._round_shape_mismatch(submission)
            if mismatch is None:
                if participant_id in self.pending:
                    logger.info(f"Replacing earlier submission from {participant_id}")
                self.pending[participant_id] = submission
            pool_size = len(self.pending)
            should_trigger = (
                mismatch is None
                and pool_size >= self.config.min_submissions
                and not self.aggregation_in_progress
                and self.state == CoordinatorState.IDLE
            )

        if mismatch is not None:
            logger.warning(str(mismatch))
            self._record_submission('invalid')
            return SubmitOutcome(accepted=False, pool_size=pool_size, reason=str(mismatch))

        self._record_submission('accepted')
        self._update_gauges()
        logger.info(f"Submission from {participant_id} accepted ({pool_size}/{self.config.min_submissions})")

        outcome = SubmitOutcome(accepted=True, pool_size=pool_size)
        if not should_trigger:
            return outcome

        logger.info(f"Triggering aggregation with {pool_size} submissions")
        try:
            result = await self.aggregate()
        except AggregationError as e:
            outcome.aggregation_triggered = True
            outcome.reason = str(e)
        else:
            if result is not None:
                outcome.aggregation_triggered = True
                outcome.new_version = result.model_version

        outcome.pool_size = self.pool_size
        return outcome

    async def aggregate(self) -> Optional[AggregationResult]:
        """Aggregate the current pool into the next global model.

        Returns None when another aggregation is already running. On any
        aggregation failure the counters are left untouched, the snapshot is
        merged back into the live pool and the typed error is raised.
        """
        async with self._lock:
            if self.aggregation_in_progress:
                logger.info("Already aggregating, skipping trigger")
                self._record_aggregation('skipped')
                return None

            if self.state == CoordinatorState.AWAITING_PERSISTENCE:
                unpersisted = self._unpersisted
                raise StoreUnavailableError(
                    f"Model v{unpersisted.result.model_version} is aggregated but not persisted",
                    model=unpersisted.model, result=unpersisted.result
                )

            if len(self.pending) < self.config.min_submissions:
                self._record_aggregation('insufficient')
                raise InsufficientSubmissionsError(len(self.pending), self.config.min_submissions)

            self.aggregation_in_progress = True
            self.state = CoordinatorState.AGGREGATING
            snapshot = self.pending
            self.pending = {}
            round_number = self.round_state.current_round
            current_version = self.round_state.current_version

        self._update_gauges()
        logger.info(f"Starting aggregation for round {round_number} with {len(snapshot)} submissions")
        started = time.perf_counter()

        try:
            result, contributors = await self._compute(list(snapshot.values()), round_number, current_version)
        except AggregationError as e:
            await self._rollback(snapshot)
            self._record_aggregation(self._outcome_for(e), time.perf_counter() - started)
            raise
        except Exception as e:
            logger.error(f"Aggregation failed for round {round_number}: {e}")
            await self._rollback(snapshot)
            self._record_aggregation('error', time.perf_counter() - started)
            raise AggregationError(f"Aggregation failed: {e}") from e

        pending = _UnpersistedAggregation(result=result, contributors=contributors, snapshot=snapshot)
        try:
            await self._persist(pending)
        except StoreUnavailableError as e:
            async with self._lock:
                self._unpersisted = pending
                self.state = CoordinatorState.AWAITING_PERSISTENCE
                self.aggregation_in_progress = False
            self._record_aggregation('store_unavailable', time.perf_counter() - started)
            logger.error(
                f"Model v{result.model_version} aggregated but not persisted, "
                f"counters held at round {round_number}: {e}"
            )
            raise StoreUnavailableError(str(e), model=pending.model, result=result) from e

        async with self._lock:
            self._commit(pending)

        self._record_aggregation('success', time.perf_counter() - started)
        self._update_gauges()
        logger.info(
            f"Aggregation completed for round {result.round}: global model v{result.model_version} "
            f"from {result.num_submissions} submissions"
        )
        return result

    async def retry_persist(self) -> Optional[AggregationResult]:
        """Retry saving an aggregated but unpersisted model; None if there is nothing to save"""
        async with self._lock:
            if self.state != CoordinatorState.AWAITING_PERSISTENCE or self.aggregation_in_progress:
                return None
            pending = self._unpersisted
            self.aggregation_in_progress = True

        try:
            await self._persist(pending)
        except StoreUnavailableError as e:
            async with self._lock:
                self.aggregation_in_progress = False
            raise StoreUnavailableError(str(e), model=pending.model, result=pending.result) from e

        async with self._lock:
            self._commit(pending)

        self._record_aggregation('success')
        self._update_gauges()
        logger.info(f"Persisted global model v{pending.result.model_version} on retry")
        return pending.result

    async def discard_unpersisted(self) -> bool:
        """Drop an unpersisted model and return its submissions to the live pool"""
        async with self._lock:
            if self.state != CoordinatorState.AWAITING_PERSISTENCE or self.aggregation_in_progress:
                return False
            pending = self._unpersisted
            self._restore_pool(pending.snapshot)
            self._unpersisted = None
            self.state = CoordinatorState.IDLE

        self._update_gauges()
        logger.warning(f"Discarded unpersisted model v{pending.result.model_version}")
        return True

    async def reset(self) -> bool:
        """Clear pool, counters, latest model and stored history.

        The store is cleared first; if that raises StoreUnavailableError the
        in-memory state is left as it was.
        """
        async with self._lock:
            if self.aggregation_in_progress:
                logger.warning("Refusing reset while an aggregation is in progress")
                return False

            await self.store.clear()

            self.pending = {}
            self.round_state = RoundState()
            self.global_model = None
            self._unpersisted = None
            self.state = CoordinatorState.IDLE
            self.last_aggregation_time = None

        self._update_gauges()
        logger.info("Round coordinator reset")
        return True

    async def get_status(self) -> Dict[str, Any]:
        """Get coordinator status"""
        return {
            'current_round': self.round_state.current_round,
            'current_version': self.round_state.current_version,
            'pool_size': len(self.pending),
            'min_submissions': self.config.min_submissions,
            'aggregation_in_progress': self.aggregation_in_progress,
            'state': self.state.value,
            'global_model_version': self.global_model.version if self.global_model else None,
            'unpersisted_version': self._unpersisted.result.model_version if self._unpersisted else None,
            'last_aggregation': self.last_aggregation_time.isoformat() if self.last_aggregation_time else None,
            'algorithm': self.config.algorithm.value,
            'weighting_strategy': self.config.weighting_strategy.value,
            'algorithm_info': self.aggregator.get_algorithm_info(),
        }

    async def get_global_model(self) -> Optional[GlobalModel]:
        return self.global_model

    async def get_history(self, limit: Optional[int] = None) -> List[AggregationResult]:
        return await self.store.load_history(limit)

    def get_pending_participants(self) -> List[str]:
        return list(self.pending.keys())

    def _round_shape_mismatch(self, submission: ModelSubmission) -> Optional[SubmissionValidationError]:
        """Compare against the newest known model, else the pool's first other entry; call under the lock"""
        if self._unpersisted is not None:
            reference, source = self._unpersisted.result.global_weights, "the pending global model"
        elif self.global_model is not None:
            reference, source = self.global_model.weights, "the current global model"
        else:
            reference = next(
                (s.model_weights for pid, s in self.pending.items() if pid != submission.participant_id), None
            )
            source = "the submissions already pooled for this round"

        if reference is None or submission.model_weights.shape_signature() == reference.shape_signature():
            return None
        return SubmissionValidationError(submission.participant_id, f"model shapes do not match {source}")

    async def _compute(self, submissions: List[ModelSubmission], round_number: int, current_version: int):
        """Outlier screening and aggregation, off the event loop"""
        contributors = submissions
        outlier_ids: List[str] = []

        if self.config.outlier_detection:
            report = await asyncio.to_thread(
                self.outlier_detector.detect, submissions, self.config.outlier_threshold
            )
            self._record_outliers(len(report.outliers))

            if len(report.valid) < self.config.min_submissions:
                logger.warning(
                    f"Outlier filtering left {len(report.valid)} submissions "
                    f"(< {self.config.min_submissions}), using all {len(submissions)} verified submissions"
                )
            else:
                contributors = report.valid
                outlier_ids = report.outlier_ids

        result = await asyncio.to_thread(
            self.aggregator.build_result, contributors, outlier_ids, round_number, current_version
        )
        return result, contributors

    async def _persist(self, pending: _UnpersistedAggregation):
        """Create and save the global model, then record history and counters"""
        result = pending.result

        if pending.model is None:
            weights_cid = None
            if self.blob_store is not None:
                data = serialize_weights(result.global_weights)
                weights_cid = await self._with_retries(
                    lambda: self.blob_store.put(data), f"blob for model v{result.model_version}"
                )
            pending.model = create_global_model(result, pending.contributors, weights_cid=weights_cid)

        model = pending.model
        await self._with_retries(lambda: self.store.save(model), f"global model v{model.version}")

        # The model is durable from here on; counters are reconciled from it on restart
        next_state = RoundState(current_round=result.round + 1, current_version=result.model_version)
        try:
            await self.store.append_history(result)
            await self.store.save_round_state(next_state)
        except StoreUnavailableError as e:
            logger.error(f"Failed to record history or counters for v{result.model_version}: {e}")

    async def _with_retries(self, operation, description: str):
        attempts = self.save_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                logger.warning(f"Saving {description} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))

        raise StoreUnavailableError(f"Failed to save {description} after {attempts} attempts: {last_error}")

    def _commit(self, pending: _UnpersistedAggregation):
        result = pending.result
        self.global_model = pending.model
        self.round_state = RoundState(current_round=result.round + 1, current_version=result.model_version)
        self.last_aggregation_time = utc_now()
        self._unpersisted = None
        self.state = CoordinatorState.IDLE
        self.aggregation_in_progress = False

    async def _rollback(self, snapshot: Dict[str, ModelSubmission]):
        async with self._lock:
            self._restore_pool(snapshot)
            self.state = CoordinatorState.IDLE
            self.aggregation_in_progress = False
        self._update_gauges()
        logger.info(f"Aggregation rolled back, {len(self.pending)} submissions back in the pool")

    def _restore_pool(self, snapshot: Dict[str, ModelSubmission]):
        # Entries that arrived during the aggregation are newer and win
        merged = dict(snapshot)
        merged.update(self.pending)
        self.pending = merged

    @staticmethod
    def _outcome_for(error: AggregationError) -> str:
        if isinstance(error, InsufficientSubmissionsError):
            return 'insufficient'
        if isinstance(error, ShapeMismatchError):
            return 'shape_mismatch'
        return 'error'

    def _record_submission(self, status: str):
        if self.metrics:
            self.metrics.record_submission(status)

    def _record_aggregation(self, outcome: str, duration: Optional[float] = None):
        if self.metrics:
            self.metrics.record_aggregation(outcome, self.config.algorithm.value, duration)

    def _record_outliers(self, count: int):
        if self.metrics:
            self.metrics.record_outliers(count)

    def _update_gauges(self):
        if self.metrics:
            self.metrics.update_pool_size(len(self.pending))
            self.metrics.update_round_state(
                self.round_state.current_round,
                self.round_state.current_version,
                self.global_model.metadata.average_accuracy if self.global_model else None
            )
