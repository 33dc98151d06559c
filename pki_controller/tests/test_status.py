"""Tests for status sinks and status documents."""

import io
import json
from datetime import UTC, datetime, timedelta

import pytest

from pki_controller.lib.errors import StatusWriteError
from pki_controller.lib.models import FailedResult, SucceededResult
from pki_controller.lib.status import (
    InMemoryStatusSink,
    JsonLinesStatusSink,
    begin_refresh_at,
    pod_certificate_status,
)

NOT_BEFORE = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def succeeded() -> SucceededResult:
    """Return successful result with a fake two-certificate chain."""
    not_after = NOT_BEFORE + timedelta(hours=24)
    return SucceededResult(
        certificate_chain=(b"-----BEGIN CERTIFICATE-----\nleaf\n", b"-----BEGIN CERTIFICATE-----\nca\n"),
        not_before=NOT_BEFORE,
        not_after=not_after,
        begin_refresh_at=begin_refresh_at(NOT_BEFORE, not_after),
    )


@pytest.fixture
def failed() -> FailedResult:
    """Return failure result for a malformed key."""
    return FailedResult(reason="InvalidPublicKey", message="public key is missing")


class BrokenStream(io.StringIO):
    """Stream whose writes fail."""

    def write(self, s: str) -> int:
        raise OSError("disk full")


class TestBeginRefreshAt:
    """Tests for begin_refresh_at()."""

    def test_one_hour_before_expiry(self) -> None:
        """Long-lived certificate refreshes one hour before expiry."""
        not_after = NOT_BEFORE + timedelta(hours=24)

        assert begin_refresh_at(NOT_BEFORE, not_after) == not_after - timedelta(hours=1)

    def test_halfway_for_short_lifetime(self) -> None:
        """Certificate shorter than two hours refreshes halfway through."""
        not_after = NOT_BEFORE + timedelta(minutes=30)

        assert begin_refresh_at(NOT_BEFORE, not_after) == NOT_BEFORE + timedelta(minutes=15)


class TestPodCertificateStatus:
    """Tests for pod_certificate_status() - PodCertificateRequest status patch."""

    def test_succeeded(self, succeeded: SucceededResult) -> None:
        """Success carries the chain, validity and an Issued condition."""
        status = pod_certificate_status(succeeded, now=NOT_BEFORE)

        assert status["certificateChain"].startswith("-----BEGIN CERTIFICATE-----\nleaf\n")
        assert status["certificateChain"].endswith("ca\n")
        assert status["notBefore"] == "2026-01-01T12:00:00Z"
        assert status["notAfter"] == "2026-01-02T12:00:00Z"
        assert status["beginRefreshAt"] == "2026-01-02T11:00:00Z"
        (condition,) = status["conditions"]
        assert condition["type"] == "Issued"
        assert condition["reason"] == "CertificateIssuedSuccessfully"
        assert condition["lastTransitionTime"] == "2026-01-01T12:00:00Z"

    def test_failed(self, failed: FailedResult) -> None:
        """Failure carries only a Failed condition with the reason."""
        status = pod_certificate_status(failed, now=NOT_BEFORE)

        assert "certificateChain" not in status
        (condition,) = status["conditions"]
        assert condition["type"] == "Failed"
        assert condition["status"] == "True"
        assert condition["reason"] == "InvalidPublicKey"
        assert condition["message"] == "public key is missing"


class TestInMemoryStatusSink:
    """Tests for InMemoryStatusSink."""

    def test_repeated_write_has_no_effect(self, make_request, succeeded: SucceededResult) -> None:
        """Writing the same result twice counts one effective write."""
        sink = InMemoryStatusSink()
        request = make_request()

        sink.write(request, succeeded)
        sink.write(request, succeeded)

        assert sink.get("req-1") == succeeded
        assert sink.write_count == 1

    def test_changed_result_replaces(
        self, make_request, succeeded: SucceededResult, failed: FailedResult
    ) -> None:
        """A different result for the same request replaces the previous one."""
        sink = InMemoryStatusSink()
        request = make_request()

        sink.write(request, failed)
        sink.write(request, succeeded)

        assert sink.get("req-1") == succeeded
        assert sink.write_count == 2


class TestJsonLinesStatusSink:
    """Tests for JsonLinesStatusSink."""

    def test_writes_status_document(self, make_request, succeeded: SucceededResult) -> None:
        """One JSON line identifies the request and carries its status."""
        stream = io.StringIO()
        sink = JsonLinesStatusSink(stream, clock=lambda: NOT_BEFORE)

        sink.write(make_request(), succeeded)

        document = json.loads(stream.getvalue())
        assert document["requestId"] == "req-1"
        assert document["name"] == "web-0-pcr"
        assert document["namespace"] == "default"
        assert document["state"] == "Succeeded"
        assert document["status"]["notAfter"] == "2026-01-02T12:00:00Z"
        assert "reason" not in document

    def test_failure_document_has_reason(self, make_request, failed: FailedResult) -> None:
        """Failure document carries the reason at top level."""
        stream = io.StringIO()
        sink = JsonLinesStatusSink(stream, clock=lambda: NOT_BEFORE)

        sink.write(make_request(), failed)

        document = json.loads(stream.getvalue())
        assert document["state"] == "Failed"
        assert document["reason"] == "InvalidPublicKey"

    def test_repeated_write_suppressed(self, make_request, succeeded: SucceededResult) -> None:
        """Writing the same result twice emits one line."""
        stream = io.StringIO()
        sink = JsonLinesStatusSink(stream, clock=lambda: NOT_BEFORE)
        request = make_request()

        sink.write(request, succeeded)
        sink.write(request, succeeded)

        assert len(stream.getvalue().splitlines()) == 1

    def test_stream_failure_raises_status_write_error(
        self, make_request, succeeded: SucceededResult
    ) -> None:
        """Stream error becomes StatusWriteError and the write is retried next time."""
        sink = JsonLinesStatusSink(BrokenStream(), clock=lambda: NOT_BEFORE)
        request = make_request()

        with pytest.raises(StatusWriteError, match="disk full"):
            sink.write(request, succeeded)
        with pytest.raises(StatusWriteError):
            sink.write(request, succeeded)
