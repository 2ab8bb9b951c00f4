"""
Proof verification adapters
"""
import asyncio
import logging

from ..common.interfaces import ModelSubmission, VerificationGateway

logger = logging.getLogger(__name__)

MIN_WEIGHTS_HASH_LENGTH = 10


class SignatureVerificationGateway(VerificationGateway):
    """Placeholder check until on-chain proof verification is wired in.

    A submission passes when it carries a signature and a transaction hash
    and its weights hash looks like a real digest.
    """

    async def verify(self, submission: ModelSubmission) -> bool:
        if not submission.signature or not submission.tx_hash:
            logger.warning(f"Submission from {submission.participant_id} is missing signature or transaction hash")
            return False

        if len(submission.weights_hash or '') < MIN_WEIGHTS_HASH_LENGTH:
            logger.warning(f"Submission from {submission.participant_id} has an invalid weights hash")
            return False

        return True


class AllowAllVerificationGateway(VerificationGateway):
    """Accepts every submission; for local demos without proofs"""

    async def verify(self, submission: ModelSubmission) -> bool:
        return True


async def verify_with_timeout(gateway: VerificationGateway, submission: ModelSubmission,
                              timeout: float) -> bool:
    """Run the gateway with a deadline; timeouts and gateway errors count as failures"""
    try:
        return bool(await asyncio.wait_for(gateway.verify(submission), timeout=timeout))
    except asyncio.TimeoutError:
        logger.warning(f"Verification timed out after {timeout}s for {submission.participant_id}")
        return False
    except Exception as e:
        logger.error(f"Verification gateway error for {submission.participant_id}: {e}")
        return False
