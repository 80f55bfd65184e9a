import asyncio
import logging

import httpx
from pydantic import BaseModel, ConfigDict

from app.exceptions.custom import RateLimitError, VapiError
from app.schemas.calls import CallRecord
from app.services.call_tracker import CallStateTracker
from app.services.vapi import VapiService

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = 8
    delay_seconds: float = 2.5
    backoff: float = 1.0

    def delay_before(self, attempt: int) -> float:
        """Delay before zero-based *attempt*; the first attempt runs immediately."""
        if attempt <= 0:
            return 0.0
        return self.delay_seconds * (self.backoff ** (attempt - 1))


class ArtifactReconciler:
    """Re-fetch an ended call until its recording and analysis are present."""

    def __init__(
        self,
        vapi: VapiService | None,
        tracker: CallStateTracker,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._vapi = vapi
        self._tracker = tracker
        self._policy = policy or RetryPolicy()

    async def reconcile(self, call_id: str) -> CallRecord | None:
        call = await self._tracker.get(call_id)
        if call is None:
            return None
        if call.has_artifacts:
            return await self._tracker.set_artifacts_complete(call_id, True)
        if self._vapi is None:
            logger.warning("Call %s: VAPI not configured, skipping reconciliation", call_id)
            return await self._tracker.set_artifacts_complete(call_id, False)

        attempts = max(1, self._policy.max_attempts)
        for attempt in range(attempts):
            delay = self._policy.delay_before(attempt)
            if delay:
                await asyncio.sleep(delay)
            try:
                snapshot = await self._vapi.get_call(call_id)
            except (VapiError, RateLimitError, httpx.HTTPError) as exc:
                logger.warning(
                    "Call %s: artifact fetch failed (attempt %d/%d): %s",
                    call_id, attempt + 1, attempts, exc,
                )
                continue

            updated = await self._tracker.apply_snapshot(call_id, snapshot)
            if updated is not None:
                call = updated
            if call.has_artifacts:
                logger.info(
                    "Call %s: artifacts ready after %d attempts", call_id, attempt + 1,
                )
                return await self._tracker.set_artifacts_complete(call_id, True)
            logger.info(
                "Call %s: artifacts not ready yet (attempt %d/%d)",
                call_id, attempt + 1, attempts,
            )

        logger.warning(
            "Call %s: artifacts not available after %d attempts, proceeding with partial data",
            call_id, attempts,
        )
        return await self._tracker.set_artifacts_complete(call_id, False)
