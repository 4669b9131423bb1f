"""
Degradation policy for optional stages (compositing, lip sync).

An optional stage either hands back an enhanced reference or the run
continues with the baseline it already has. Enhancements are never retried.
"""

import logging
from enum import Enum
from typing import Awaitable, Optional

from pydantic import BaseModel

from .. import metrics
from .errors import CapabilityUnavailable

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    USE_ENHANCED = "use_enhanced"
    USE_BASELINE = "use_baseline"
    PROPAGATE_ERROR = "propagate_error"


class StageOutcome(BaseModel):
    stage: str
    decision: Decision
    value: Optional[str] = None
    notice: Optional[str] = None
    error: Optional[str] = None

    @property
    def enhanced(self) -> bool:
        return self.decision == Decision.USE_ENHANCED


# Informational notices shown next to a reduced-quality success.
NOTICES = {
    "lipsync": {
        "unavailable": "Video generated without lip sync (service not configured)",
        "failed": "Video generated without lip sync",
    },
    "composite": {
        "unavailable": "Character placed without background compositing (service not configured)",
        "failed": "Character placed without background compositing",
    },
}


def _notice(stage: str, unavailable: bool) -> str:
    texts = NOTICES.get(stage, {})
    key = "unavailable" if unavailable else "failed"
    return texts.get(key) or f"{stage} skipped"


class DegradationManager:
    async def resolve(
        self,
        stage: str,
        attempt: Awaitable[Optional[str]],
        baseline: Optional[str],
    ) -> StageOutcome:
        """
        Await an optional enhancement and decide which reference the run keeps.

        Args:
            stage:    Stage name ("lipsync", "composite").
            attempt:  Awaitable producing the enhanced reference (None = absent).
            baseline: Reference to keep when the enhancement is missing.

        Returns:
            StageOutcome. PROPAGATE_ERROR only when there is no baseline.
        """
        unavailable = False
        error: Optional[str] = None
        try:
            enhanced = await attempt
        except CapabilityUnavailable as e:
            enhanced, unavailable, error = None, True, str(e)
            logger.warning(f"{stage} unavailable: {e}")
        except Exception as e:
            enhanced, error = None, str(e)
            logger.warning(f"{stage} failed, using baseline: {e}")

        if enhanced:
            return StageOutcome(stage=stage, decision=Decision.USE_ENHANCED, value=enhanced)

        if error is None:
            error = "No enhanced output returned"
            logger.warning(f"{stage} returned no output, using baseline")

        if not baseline:
            logger.error(f"{stage} failed and there is no baseline to fall back to")
            return StageOutcome(stage=stage, decision=Decision.PROPAGATE_ERROR, error=error)

        metrics.inc_counter(f"fallback.{stage}")
        return StageOutcome(
            stage=stage,
            decision=Decision.USE_BASELINE,
            value=baseline,
            notice=_notice(stage, unavailable),
            error=error,
        )
