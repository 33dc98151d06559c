"""Status sinks and the PodCertificateRequest status document."""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import NotRequired, Protocol, TextIO, TypedDict

from .cert_utils import utc_now
from .errors import StatusWriteError
from .models import FailedResult, IdentityRequest, StatusResult, SucceededResult

logger = logging.getLogger(__name__)

REFRESH_LEAD_TIME = timedelta(hours=1)


class Condition(TypedDict):
    type: str
    status: str
    reason: str
    message: str
    lastTransitionTime: str


class PodCertificateRequestStatus(TypedDict, total=False):
    """Status fields of a PodCertificateRequest."""

    certificateChain: str
    notBefore: str
    notAfter: str
    beginRefreshAt: str
    conditions: list[Condition]


class StatusDocument(TypedDict):
    """One status write as emitted by JsonLinesStatusSink."""

    requestId: str
    name: str
    namespace: str
    state: str
    status: PodCertificateRequestStatus
    reason: NotRequired[str]


class StatusSink(Protocol):
    """Destination for terminal request results. Writes must be idempotent."""

    def write(self, request: IdentityRequest, result: StatusResult) -> None: ...


def begin_refresh_at(not_before: datetime, not_after: datetime) -> datetime:
    """Return when the holder should start refreshing a certificate.

    One hour before expiry, or halfway through the lifetime for certificates
    shorter than two hours.
    """
    lead = min(REFRESH_LEAD_TIME, (not_after - not_before) / 2)
    return not_after - lead


def _timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def pod_certificate_status(
    result: StatusResult, now: datetime | None = None
) -> PodCertificateRequestStatus:
    """Build the PodCertificateRequest status merge patch for ``result``."""
    transition_time = _timestamp(now or utc_now())
    if isinstance(result, SucceededResult):
        return PodCertificateRequestStatus(
            certificateChain="".join(pem.decode() for pem in result.certificate_chain),
            notBefore=_timestamp(result.not_before),
            notAfter=_timestamp(result.not_after),
            beginRefreshAt=_timestamp(result.begin_refresh_at),
            conditions=[
                Condition(
                    type="Issued",
                    status="True",
                    reason="CertificateIssuedSuccessfully",
                    message="Certificate issued successfully",
                    lastTransitionTime=transition_time,
                )
            ],
        )
    return PodCertificateRequestStatus(
        conditions=[
            Condition(
                type="Failed",
                status="True",
                reason=result.reason,
                message=result.message,
                lastTransitionTime=transition_time,
            )
        ]
    )


class InMemoryStatusSink:
    """Thread-safe sink keeping the latest result per request id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.results: dict[str, StatusResult] = {}
        self.write_count = 0

    def write(self, request: IdentityRequest, result: StatusResult) -> None:
        with self._lock:
            if self.results.get(request.request_id) == result:
                return
            self.results[request.request_id] = result
            self.write_count += 1

    def get(self, request_id: str) -> StatusResult | None:
        with self._lock:
            return self.results.get(request_id)


class JsonLinesStatusSink:
    """Writes one JSON status document per changed result to a text stream."""

    def __init__(self, stream: TextIO, clock=utc_now) -> None:
        self._stream = stream
        self._clock = clock
        self._lock = threading.Lock()
        self._last: dict[str, StatusResult] = {}

    def write(self, request: IdentityRequest, result: StatusResult) -> None:
        with self._lock:
            if self._last.get(request.request_id) == result:
                logger.debug("Status for %s unchanged, skipping write", request.request_id)
                return
            document = StatusDocument(
                requestId=request.request_id,
                name=request.name,
                namespace=request.namespace,
                state=result.state.value,
                status=pod_certificate_status(result, self._clock()),
            )
            if isinstance(result, FailedResult):
                document["reason"] = result.reason
            try:
                self._stream.write(json.dumps(document) + "\n")
                self._stream.flush()
            except (OSError, ValueError) as e:
                raise StatusWriteError(f"failed to write status for {request.request_id}: {e}") from e
            self._last[request.request_id] = result
