"""
Long-Running Job Poller

Drives one remote generation operation to an end state:

    SUBMITTED -> POLLING -> DONE | FAILED | TIMEOUT | CANCELLED

The poller submits on the primary model, resubmits once on a fallback model
under quota pressure, tolerates a bounded run of transient poll failures and
pulls the result out of whichever response shape the provider returned.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import requests
import structlog

from ..config import Settings
from ..errors import (
    Cancelled,
    GenLedgerError,
    Timeout,
    UnsupportedResult,
    UpstreamError,
    UpstreamQuotaExceeded,
)

logger = structlog.get_logger()

REQUEST_TIMEOUT_SECONDS = 30

NEGATIVE_PROMPT = (
    "distorted, low quality, watermark, blurry, deformed, ugly, "
    "bad anatomy, bad quality, low resolution"
)


class TransientPollError(UpstreamError):
    """A poll failure worth retrying (not yet visible, 5xx, connection)."""
    code = "upstream_transient"


def is_quota_error(status: Optional[int], message: str) -> bool:
    text = (message or "").lower()
    return status == 429 or "resource_exhausted" in text or "quota" in text


# =============================================================================
# Provider client
# =============================================================================

class VertexClient:
    """Bearer-token HTTP access to Vertex AI publisher models."""

    def __init__(
        self,
        project_id: Optional[str],
        location: str = "us-central1",
        access_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.project_id = project_id
        self.location = location
        self.access_token = access_token
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "VertexClient":
        return cls(
            project_id=settings.vertex_project_id,
            location=settings.vertex_location,
            access_token=settings.vertex_access_token,
        )

    def _model_url(self, model_id: str, method: str) -> str:
        return (
            f"https://{self.location}-aiplatform.googleapis.com/v1/projects/{self.project_id}"
            f"/locations/{self.location}/publishers/google/models/{model_id}:{method}"
        )

    def _post(self, url: str, body: Dict[str, Any], transient_statuses: Tuple[int, ...]) -> Dict[str, Any]:
        if not self.project_id or not self.access_token:
            raise UpstreamError("Generation provider is not configured")
        try:
            response = self.session.post(
                url,
                json=body,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.exceptions.RequestException as e:
            raise TransientPollError(f"Provider request failed: {e}")

        if response.ok:
            try:
                document = response.json()
            except ValueError:
                raise UpstreamError(
                    f"Provider returned a non-JSON body: {response.text[:200]}",
                    status=response.status_code,
                )
            if not isinstance(document, dict):
                raise UpstreamError("Provider returned an unexpected body", status=response.status_code)
            return document

        text = response.text[:500]
        if is_quota_error(response.status_code, text):
            raise UpstreamQuotaExceeded(f"Provider quota exceeded: {text}", status=response.status_code)
        if response.status_code in transient_statuses or response.status_code >= 500:
            raise TransientPollError(f"Provider returned {response.status_code}: {text}", status=response.status_code)
        raise UpstreamError(f"Provider returned {response.status_code}: {text}", status=response.status_code)


class VertexVideoClient(VertexClient):
    """predictLongRunning / fetchPredictOperation for video models."""

    def submit(self, model_id: str, prompt: str, params: Dict[str, Any]) -> str:
        """Start an operation and return its name."""
        body = {
            "instances": [{
                "prompt": prompt,
                "negativePrompt": params.get("negative_prompt", NEGATIVE_PROMPT),
            }],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": params.get("aspect_ratio", "9:16"),
            },
        }
        if params.get("duration_seconds"):
            body["parameters"]["durationSeconds"] = int(params["duration_seconds"])

        operation = self._post(self._model_url(model_id, "predictLongRunning"), body, ())
        name = operation.get("name")
        if not name:
            raise UpstreamError("Provider did not return an operation name")
        return name

    def fetch(self, model_id: str, operation_name: str) -> Dict[str, Any]:
        """Return the current operation document."""
        return self._post(
            self._model_url(model_id, "fetchPredictOperation"),
            {"operationName": operation_name},
            (404,),
        )


# =============================================================================
# Result extraction
# =============================================================================

INLINE_FIELDS = ("bytesBase64Encoded", "videoBytes", "bytes", "content")


def _inline_bytes(item: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(item, dict):
        return False, None
    for name in INLINE_FIELDS:
        value = item.get(name)
        if value:
            return True, value
    nested = item.get("video")
    if isinstance(nested, dict) and nested.get("video_bytes"):
        return True, nested["video_bytes"]
    return False, None


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def from_predictions(response: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    return _inline_bytes(_first(response.get("predictions")))


def from_videos(response: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    return _inline_bytes(_first(response.get("videos")))


def from_response(response: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    return _inline_bytes(response)


EXTRACTORS: List[Callable[[Dict[str, Any]], Tuple[bool, Optional[str]]]] = [
    from_predictions,
    from_videos,
    from_response,
]


def _remote_reference(response: Dict[str, Any]) -> Optional[str]:
    for item in (_first(response.get("predictions")), _first(response.get("videos")), response):
        if isinstance(item, dict):
            uri = item.get("gcsUri") or item.get("uri")
            if uri:
                return uri
    return None


def extract_payload(operation: Dict[str, Any]) -> str:
    """
    Pull inline bytes out of a finished operation.

    Raises UnsupportedResult when only a storage reference came back and
    UpstreamError when nothing usable is present.
    """
    response = operation.get("response") or {}
    for extractor in EXTRACTORS:
        found, value = extractor(response)
        if found:
            return value

    uri = _remote_reference(response)
    if uri:
        raise UnsupportedResult(f"Result is only available at {uri}", uri=uri)
    raise UpstreamError(
        "Operation finished without inline output",
        response_keys=sorted(response.keys()),
    )


# =============================================================================
# Poller
# =============================================================================

class JobState(Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    DONE = "done"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class JobHandle:
    operation_name: str
    model_id: str
    attempt_count: int = 0
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class JobOutcome:
    """End state of one job. `payload` is set only when DONE."""
    state: JobState
    payload: Optional[str] = None
    handle: Optional[JobHandle] = None
    error: Optional[GenLedgerError] = None

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.DONE

    @property
    def model_id(self) -> Optional[str]:
        return self.handle.model_id if self.handle else None


class JobPoller:
    """
    Bounded polling loop with quota fallback and cancellation.

    Usage:
        poller = JobPoller(client, model_id="veo-3.1-generate-001",
                           fallback_model_id="veo-3.0-fast-generate-001")
        outcome = poller.run("a cat surfing", {}, cancel_event)
    """

    def __init__(
        self,
        client: Any,
        model_id: str,
        fallback_model_id: Optional[str] = None,
        interval: float = 3.0,
        max_attempts: int = 90,
        max_transient_failures: int = 5,
    ):
        self.client = client
        self.model_id = model_id
        self.fallback_model_id = fallback_model_id
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_transient_failures = max_transient_failures

    @classmethod
    def from_settings(cls, settings: Settings, client: Any = None) -> "JobPoller":
        return cls(
            client=client or VertexVideoClient.from_settings(settings),
            model_id=settings.video_model,
            fallback_model_id=settings.video_fallback_model,
            interval=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
            max_transient_failures=settings.poll_max_transient_failures,
        )

    def _can_fall_back(self, model_id: str) -> bool:
        return bool(self.fallback_model_id) and model_id == self.model_id and self.fallback_model_id != model_id

    def submit(self, prompt: str, params: Dict[str, Any]) -> JobHandle:
        """Start the operation, retrying once on the fallback model for quota errors."""
        try:
            name = self.client.submit(self.model_id, prompt, params)
            model_id = self.model_id
        except UpstreamQuotaExceeded as e:
            if not self._can_fall_back(self.model_id):
                raise
            logger.warning(
                "job_quota_fallback",
                stage="submit",
                model=self.model_id,
                fallback=self.fallback_model_id,
                error=e.message,
            )
            name = self.client.submit(self.fallback_model_id, prompt, params)
            model_id = self.fallback_model_id

        logger.info("job_submitted", operation=name, model=model_id)
        return JobHandle(operation_name=name, model_id=model_id)

    def run(
        self,
        prompt: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobOutcome:
        """Submit and poll until an end state. Never raises for job outcomes."""
        params = params or {}
        cancel_event = cancel_event or threading.Event()

        try:
            handle = self.submit(prompt, params)
        except GenLedgerError as e:
            logger.error("job_submit_failed", model=self.model_id, error=e.message, code=e.code)
            return JobOutcome(state=JobState.FAILED, error=e)

        transient_failures = 0

        while handle.attempt_count < self.max_attempts:
            if cancel_event.wait(self.interval):
                logger.info("job_cancelled", operation=handle.operation_name, attempts=handle.attempt_count)
                return JobOutcome(
                    state=JobState.CANCELLED,
                    handle=handle,
                    error=Cancelled("Job cancelled by caller"),
                )

            handle.attempt_count += 1
            try:
                operation = self.client.fetch(handle.model_id, handle.operation_name)
            except TransientPollError as e:
                transient_failures += 1
                logger.warning(
                    "job_poll_transient_failure",
                    operation=handle.operation_name,
                    attempt=handle.attempt_count,
                    consecutive=transient_failures,
                    error=e.message,
                )
                if transient_failures >= self.max_transient_failures:
                    return JobOutcome(state=JobState.FAILED, handle=handle, error=e)
                continue
            except GenLedgerError as e:
                logger.error("job_poll_failed", operation=handle.operation_name, error=e.message)
                return JobOutcome(state=JobState.FAILED, handle=handle, error=e)

            transient_failures = 0
            if not operation.get("done"):
                continue

            error = operation.get("error")
            if error:
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                status = error.get("code") if isinstance(error, dict) else None
                if is_quota_error(status, message) and self._can_fall_back(handle.model_id):
                    logger.warning(
                        "job_quota_fallback",
                        stage="operation",
                        model=handle.model_id,
                        fallback=self.fallback_model_id,
                        error=message,
                    )
                    try:
                        name = self.client.submit(self.fallback_model_id, prompt, params)
                    except GenLedgerError as e:
                        return JobOutcome(state=JobState.FAILED, handle=handle, error=e)
                    handle = JobHandle(
                        operation_name=name,
                        model_id=self.fallback_model_id,
                        attempt_count=handle.attempt_count,
                        started_at=handle.started_at,
                    )
                    continue

                failure = (
                    UpstreamQuotaExceeded(message) if is_quota_error(status, message)
                    else UpstreamError(message)
                )
                logger.error("job_operation_failed", operation=handle.operation_name, error=message)
                return JobOutcome(state=JobState.FAILED, handle=handle, error=failure)

            try:
                payload = extract_payload(operation)
            except UpstreamError as e:
                logger.error(
                    "job_result_unusable",
                    operation=handle.operation_name,
                    error=e.message,
                    code=e.code,
                )
                return JobOutcome(state=JobState.FAILED, handle=handle, error=e)

            logger.info(
                "job_done",
                operation=handle.operation_name,
                model=handle.model_id,
                attempts=handle.attempt_count,
                elapsed=round(time.monotonic() - handle.started_at, 1),
            )
            return JobOutcome(state=JobState.DONE, payload=payload, handle=handle)

        logger.error("job_timeout", operation=handle.operation_name, attempts=handle.attempt_count)
        return JobOutcome(
            state=JobState.TIMEOUT,
            handle=handle,
            error=Timeout(f"Job did not finish after {handle.attempt_count} polls"),
        )
