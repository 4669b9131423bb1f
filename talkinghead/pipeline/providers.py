"""
Provider status adapters.

Each video engine reports the same three logical outcomes with its own
vocabulary. An adapter turns a raw status-check payload into a TaskStatus;
the adapter is picked by the provider tag carried on the AsyncTaskHandle.
"""

from typing import Optional

from .errors import UnknownProvider
from .models import TaskOutcome, TaskStatus


def _first_url(value) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, list) and value:
        head = value[0]
        if isinstance(head, str):
            return head
        if isinstance(head, dict):
            return head.get("url") or head.get("videoUrl") or head.get("video_url")
    if isinstance(value, dict):
        return value.get("url")
    return None


class ProviderAdapter:
    tag = ""

    def normalize_status(self, payload: dict) -> TaskStatus:
        raise NotImplementedError


class ReplicateAdapter(ProviderAdapter):
    """
    Replicate predictions (Kling via Replicate).

    Raw:        starting, processing, succeeded, failed, canceled
    Normalized: STARTING, RUNNING, SUCCEEDED, FAILED (status endpoint)
    """
    tag = "replicate"

    SUCCEEDED = {"succeeded", "SUCCEEDED"}
    FAILED = {"failed", "FAILED", "canceled", "CANCELED"}

    def normalize_status(self, payload: dict) -> TaskStatus:
        raw = str(payload.get("status") or "")
        if raw in self.SUCCEEDED:
            url = payload.get("videoUrl") or _first_url(payload.get("output"))
            return TaskStatus(outcome=TaskOutcome.SUCCEEDED, video_url=url, raw_status=raw)
        if raw in self.FAILED:
            error = payload.get("error") or ("Generation was canceled" if raw.lower() == "canceled" else None)
            return TaskStatus(outcome=TaskOutcome.FAILED, error=error, raw_status=raw)
        return TaskStatus(outcome=TaskOutcome.PENDING, raw_status=raw)


class KieAdapter(ProviderAdapter):
    """
    Kie.ai uses two status indicators:
      1. data.status = "SUCCESS" / "GENERATING" / "PENDING" / "GENERATE_FAILED"
      2. Veo uses data.successFlag = 0 (generating), 1 (success), 2/3 (failed)
    """
    tag = "kie"

    SUCCEEDED = {"SUCCESS", "success"}
    FAILED = {"GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail"}

    def normalize_status(self, payload: dict) -> TaskStatus:
        record = payload.get("data")
        if not isinstance(record, dict):
            record = payload
        raw = str(record.get("status") or "")
        flag = record.get("successFlag")

        if raw in self.SUCCEEDED or flag == 1:
            url = _first_url(record.get("results") or record.get("works"))
            url = url or record.get("videoUrl") or record.get("url") or record.get("video_url")
            return TaskStatus(outcome=TaskOutcome.SUCCEEDED, video_url=url, raw_status=raw or f"flag={flag}")
        if raw in self.FAILED or flag in (2, 3):
            error = record.get("error") or record.get("msg") or record.get("failReason") or payload.get("error")
            return TaskStatus(outcome=TaskOutcome.FAILED, error=error, raw_status=raw or f"flag={flag}")
        return TaskStatus(outcome=TaskOutcome.PENDING, raw_status=raw)


class WaveSpeedAdapter(ProviderAdapter):
    tag = "wavespeed"

    def normalize_status(self, payload: dict) -> TaskStatus:
        raw = str(payload.get("status") or "")
        if raw == "completed":
            return TaskStatus(
                outcome=TaskOutcome.SUCCEEDED,
                video_url=_first_url(payload.get("output")),
                raw_status=raw,
            )
        if raw in ("failed", "error"):
            return TaskStatus(outcome=TaskOutcome.FAILED, error=payload.get("error"), raw_status=raw)
        return TaskStatus(outcome=TaskOutcome.PENDING, raw_status=raw)


_ADAPTERS: dict[str, ProviderAdapter] = {
    "replicate": ReplicateAdapter(),
    "kling": ReplicateAdapter(),  # Kling runs on Replicate
    "kie": KieAdapter(),
    "wavespeed": WaveSpeedAdapter(),
}


def get_adapter(provider: str) -> ProviderAdapter:
    adapter = _ADAPTERS.get((provider or "").lower())
    if adapter is None:
        raise UnknownProvider(f"Unknown video provider: {provider!r}. Available: {sorted(_ADAPTERS)}")
    return adapter
