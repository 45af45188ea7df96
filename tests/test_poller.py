"""
Tests for the Long-Running Job Poller
"""

import pytest
import requests
import threading
from unittest.mock import MagicMock

from genledger.errors import (
    Cancelled,
    Timeout,
    UnsupportedResult,
    UpstreamError,
    UpstreamQuotaExceeded,
)
from genledger.generation.poller import (
    JobPoller,
    JobState,
    TransientPollError,
    VertexVideoClient,
    extract_payload,
)


def done(response):
    return {"done": True, "response": response}


def make_poller(client, **kwargs):
    options = {"model_id": "veo-primary", "fallback_model_id": "veo-fallback", "interval": 0}
    options.update(kwargs)
    return JobPoller(client, **options)


class TestExtraction:
    """Result shapes are tried in a fixed order."""

    def test_predictions_win_over_videos(self):
        operation = done({
            "predictions": [{"bytesBase64Encoded": "AAA"}],
            "videos": [{"bytesBase64Encoded": "BBB"}],
        })
        assert extract_payload(operation) == "AAA"

    def test_videos_array(self):
        assert extract_payload(done({"videos": [{"bytesBase64Encoded": "BBB"}]})) == "BBB"

    def test_prediction_alternate_fields(self):
        assert extract_payload(done({"predictions": [{"videoBytes": "CCC"}]})) == "CCC"
        assert extract_payload(done({"predictions": [{"video": {"video_bytes": "DDD"}}]})) == "DDD"

    def test_direct_response(self):
        assert extract_payload(done({"content": "EEE", "mimeType": "video/mp4"})) == "EEE"

    def test_empty_prediction_falls_through(self):
        operation = done({"predictions": [{}], "videos": [{"bytesBase64Encoded": "BBB"}]})
        assert extract_payload(operation) == "BBB"

    def test_storage_reference_only_is_unsupported(self):
        with pytest.raises(UnsupportedResult) as exc_info:
            extract_payload(done({"videos": [{"gcsUri": "gs://bucket/v.mp4"}]}))
        assert exc_info.value.context["uri"] == "gs://bucket/v.mp4"

    def test_nothing_found(self):
        with pytest.raises(UpstreamError) as exc_info:
            extract_payload(done({"raiMediaFilteredCount": 1}))
        assert not isinstance(exc_info.value, UnsupportedResult)


class TestPolling:

    def test_polls_until_done(self, video_client_factory):
        client = video_client_factory(fetches=[
            {"done": False},
            {"done": False},
            done({"predictions": [{"bytesBase64Encoded": "AAA"}]}),
        ])

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.DONE
        assert outcome.payload == "AAA"
        assert outcome.handle.attempt_count == 3
        assert outcome.model_id == "veo-primary"

    def test_timeout(self, video_client_factory):
        client = video_client_factory()

        outcome = make_poller(client, max_attempts=3).run("a cat surfing")

        assert outcome.state == JobState.TIMEOUT
        assert isinstance(outcome.error, Timeout)
        assert len(client.fetch_calls) == 3

    def test_transient_failures_retried(self, video_client_factory):
        client = video_client_factory(fetches=[
            TransientPollError("not found yet", status=404),
            TransientPollError("bad gateway", status=502),
            done({"videos": [{"bytesBase64Encoded": "BBB"}]}),
        ])

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.DONE

    def test_transient_failures_exhausted(self, video_client_factory):
        client = video_client_factory(fetches=[TransientPollError("down", status=503)] * 3)

        outcome = make_poller(client, max_transient_failures=3).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert len(client.fetch_calls) == 3

    def test_transient_counter_resets_on_success(self, video_client_factory):
        client = video_client_factory(fetches=[
            TransientPollError("down", status=503),
            {"done": False},
            TransientPollError("down", status=503),
            {"done": False},
            done({"videos": [{"bytesBase64Encoded": "BBB"}]}),
        ])

        outcome = make_poller(client, max_transient_failures=2).run("a cat surfing")

        assert outcome.state == JobState.DONE

    def test_operation_error_fails(self, video_client_factory):
        client = video_client_factory(fetches=[
            {"done": True, "error": {"code": 3, "message": "prompt blocked"}},
        ])

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert isinstance(outcome.error, UpstreamError)
        assert client.submit_calls == ["veo-primary"]

    def test_storage_reference_result_fails(self, video_client_factory):
        client = video_client_factory(fetches=[done({"videos": [{"gcsUri": "gs://b/v.mp4"}]})])

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert isinstance(outcome.error, UnsupportedResult)


class TestQuotaFallback:

    def test_submit_quota_uses_fallback(self, video_client_factory):
        client = video_client_factory(
            submits=[UpstreamQuotaExceeded("RESOURCE_EXHAUSTED", status=429), "operations/op-2"],
            fetches=[done({"videos": [{"bytesBase64Encoded": "BBB"}]})],
        )

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.DONE
        assert client.submit_calls == ["veo-primary", "veo-fallback"]
        assert client.fetch_calls == [("veo-fallback", "operations/op-2")]

    def test_fallback_tried_once(self, video_client_factory):
        client = video_client_factory(submits=[
            UpstreamQuotaExceeded("quota", status=429),
            UpstreamQuotaExceeded("quota", status=429),
        ])

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert isinstance(outcome.error, UpstreamQuotaExceeded)
        assert len(client.submit_calls) == 2

    def test_no_fallback_configured(self, video_client_factory):
        client = video_client_factory(submits=[UpstreamQuotaExceeded("quota", status=429)])

        outcome = make_poller(client, fallback_model_id=None).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert client.submit_calls == ["veo-primary"]

    def test_operation_quota_error_resubmits(self, video_client_factory):
        client = video_client_factory(
            submits=["operations/op-1", "operations/op-2"],
            fetches=[
                {"done": True, "error": {"code": 8, "message": "RESOURCE_EXHAUSTED: Quota exceeded"}},
                done({"predictions": [{"bytesBase64Encoded": "AAA"}]}),
            ],
        )

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.DONE
        assert outcome.model_id == "veo-fallback"
        assert client.fetch_calls[-1] == ("veo-fallback", "operations/op-2")

    def test_other_submit_errors_not_retried(self, video_client_factory):
        client = video_client_factory(submits=[UpstreamError("bad request", status=400)])

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert client.submit_calls == ["veo-primary"]


class TestCancellation:

    def test_cancelled_before_first_poll(self, video_client_factory):
        client = video_client_factory()
        cancel = threading.Event()
        cancel.set()

        outcome = make_poller(client).run("a cat surfing", cancel_event=cancel)

        assert outcome.state == JobState.CANCELLED
        assert isinstance(outcome.error, Cancelled)
        assert client.fetch_calls == []

    def test_cancelled_mid_flight(self, video_client_factory):
        cancel = threading.Event()
        client = video_client_factory(on_fetch=lambda n: cancel.set() if n == 2 else None)

        outcome = make_poller(client).run("a cat surfing", cancel_event=cancel)

        assert outcome.state == JobState.CANCELLED
        assert len(client.fetch_calls) == 2


class TestVertexClient:
    """HTTP status classification."""

    def _client(self, status_code=200, body=None, text=""):
        session = MagicMock()
        response = MagicMock()
        response.ok = 200 <= status_code < 300
        response.status_code = status_code
        response.text = text
        response.json.return_value = body or {}
        session.post.return_value = response
        return VertexVideoClient("proj", access_token="token", session=session), session

    def test_submit_returns_operation_name(self):
        client, session = self._client(body={"name": "projects/p/operations/op-1"})

        assert client.submit("veo-primary", "a cat", {}) == "projects/p/operations/op-1"
        url = session.post.call_args[0][0]
        assert url.endswith("/publishers/google/models/veo-primary:predictLongRunning")
        assert session.post.call_args[1]["headers"]["Authorization"] == "Bearer token"

    def test_fetch_posts_operation_name(self):
        client, session = self._client(body={"done": False})

        client.fetch("veo-primary", "op-1")

        assert session.post.call_args[0][0].endswith(":fetchPredictOperation")
        assert session.post.call_args[1]["json"] == {"operationName": "op-1"}

    def test_quota_classified(self):
        client, _ = self._client(status_code=429, text="RESOURCE_EXHAUSTED")
        with pytest.raises(UpstreamQuotaExceeded):
            client.submit("veo-primary", "a cat", {})

    def test_fetch_404_is_transient(self):
        client, _ = self._client(status_code=404, text="not found")
        with pytest.raises(TransientPollError):
            client.fetch("veo-primary", "op-1")

    def test_submit_400_is_terminal(self):
        client, _ = self._client(status_code=400, text="invalid argument")
        with pytest.raises(UpstreamError) as exc_info:
            client.submit("veo-primary", "a cat", {})
        assert not isinstance(exc_info.value, TransientPollError)

    def test_connection_error_is_transient(self):
        client, session = self._client()
        session.post.side_effect = requests.exceptions.ConnectionError("reset")
        with pytest.raises(TransientPollError):
            client.fetch("veo-primary", "op-1")

    def test_unconfigured_client(self):
        client = VertexVideoClient(None, session=MagicMock())
        with pytest.raises(UpstreamError):
            client.submit("veo-primary", "a cat", {})

    def test_non_json_success_body_is_terminal(self):
        client, session = self._client(text="<html>gateway</html>")
        session.post.return_value.json.side_effect = requests.exceptions.JSONDecodeError(
            "Expecting value", "<html>gateway</html>", 0
        )
        with pytest.raises(UpstreamError) as exc_info:
            client.fetch("veo-primary", "op-1")
        assert not isinstance(exc_info.value, TransientPollError)

    def test_non_object_body_rejected(self):
        client, session = self._client()
        session.post.return_value.json.return_value = ["not", "an", "object"]
        with pytest.raises(UpstreamError):
            client.submit("veo-primary", "a cat", {})

    def test_garbled_fetch_ends_job_failed(self):
        client, session = self._client()
        submitted = MagicMock(ok=True, status_code=200, text="")
        submitted.json.return_value = {"name": "operations/op-1"}
        garbled = MagicMock(ok=True, status_code=200, text="<html>")
        garbled.json.side_effect = ValueError("Expecting value")
        session.post.side_effect = [submitted, garbled]

        outcome = make_poller(client).run("a cat surfing")

        assert outcome.state == JobState.FAILED
        assert isinstance(outcome.error, UpstreamError)
