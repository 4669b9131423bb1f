"""
Bounded polling of deferred video tasks.

interval × max_attempts is the hard ceiling on how long a run waits for a
provider. A status check that itself errors out consumes an attempt but does
not end the poll: the task may still be running upstream.
"""

import os
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .. import metrics
from .errors import CapabilityError, PollFailed, PollTimeout
from .models import AsyncTaskHandle, TaskOutcome
from .providers import get_adapter

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = float(os.getenv("VIDEO_POLL_INTERVAL", "5"))             # seconds
MAX_POLL_ATTEMPTS = int(os.getenv("VIDEO_POLL_MAX_ATTEMPTS", "60"))      # 5 minutes max

StatusCheck = Callable[[AsyncTaskHandle], Awaitable[dict]]
AttemptCallback = Callable[[int, int], None]


class AsyncTaskPoller:
    """
    Usage:
        poller = AsyncTaskPoller(video_client.check_status)
        video_url = await poller.poll(handle)
    """

    def __init__(
        self,
        check_status: StatusCheck,
        interval: float = POLL_INTERVAL,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._check_status = check_status
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def poll(
        self,
        handle: AsyncTaskHandle,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> str:
        """
        Wait for a deferred task to reach a terminal state.

        Args:
            handle:     Task to watch; its provider tag selects the status adapter.
            on_attempt: Called as on_attempt(attempt, max_attempts) after each check.

        Returns:
            The completed video URL.

        Raises:
            PollFailed:      provider reported failure (or success without output).
            PollTimeout:     max_attempts checks without a terminal status.
            UnknownProvider: the handle's provider tag has no adapter.
        """
        adapter = get_adapter(handle.provider)
        task_id = handle.task_id

        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.interval)
            metrics.inc_counter("poll.attempts")

            try:
                payload = await self._check_status(handle)
            except (CapabilityError, OSError) as e:
                logger.warning(f"Status check #{attempt} for {task_id} failed, will retry: {e}")
                if on_attempt:
                    on_attempt(attempt, self.max_attempts)
                continue

            status = adapter.normalize_status(payload)
            logger.info(f"{handle.provider} poll #{attempt}: task={task_id} status={status.raw_status or 'N/A'}")

            if on_attempt:
                on_attempt(attempt, self.max_attempts)

            if status.outcome == TaskOutcome.SUCCEEDED:
                if status.video_url:
                    return status.video_url
                raise PollFailed(
                    f"Task {task_id} completed but no video URL in response",
                    task_id=task_id,
                    provider=handle.provider,
                )

            if status.outcome == TaskOutcome.FAILED:
                detail = status.error or "Unknown provider error"
                raise PollFailed(
                    f"Video task {task_id} failed: {detail}",
                    task_id=task_id,
                    provider=handle.provider,
                    detail=status.error,
                )

        raise PollTimeout(
            f"Video task {task_id} timed out after {self.max_attempts} attempts "
            f"({self.max_attempts * self.interval:.0f}s)",
            task_id=task_id,
            provider=handle.provider,
            attempts=self.max_attempts,
        )
