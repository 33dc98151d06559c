"""Request reconciler: drives identity requests to a signed certificate or a failure."""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType

from .ca_manager import IntermediateCAManager
from .config import ReconcilerConfig
from .errors import (
    BackendError,
    CAUnavailable,
    InvalidCAResponse,
    PKIControllerError,
    ReconcilerBusy,
    StatusWriteError,
)
from .models import (
    EventKind,
    FailedResult,
    IdentityRequest,
    IntermediateCA,
    RequestEvent,
    RequestState,
    StatusResult,
    SucceededResult,
    transition,
)
from .retry_policy import RetryPolicy
from .signer import LeafCertificateSigner
from .status import StatusSink, begin_refresh_at

logger = logging.getLogger(__name__)


@dataclass
class RequestRecord:
    """Reconciliation progress of one request cycle."""

    request: IdentityRequest
    state: RequestState = RequestState.PENDING
    cancelled: threading.Event = field(default_factory=threading.Event)
    result: StatusResult | None = None
    reported: bool = False
    # newer content delivered while this cycle was in flight
    next_request: IdentityRequest | None = None


class _Action(Enum):
    IGNORE = "ignore"
    START = "start"
    REPORT = "report"


def _is_transient(error: Exception) -> bool:
    return isinstance(error, BackendError) and error.transient


class Reconciler:
    """Consumes request events and advances each request's state machine.

    Requests with different ids proceed independently. For one id at most
    one cycle runs at a time; redeliveries during a cycle never start a
    second one. Results are written to the sink only if the request is still
    extant when its cycle ends.
    """

    def __init__(
        self,
        ca_manager: IntermediateCAManager,
        signer: LeafCertificateSigner,
        sink: StatusSink,
        config: ReconcilerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            ca_manager: Source of the current intermediate CA
            signer: Leaf certificate signer
            sink: Destination for terminal results
            config: Worker and retry settings
            retry_policy: Retry policy for CA acquisition (built from config if omitted)
        """
        self.config = config or ReconcilerConfig()
        self._ca_manager = ca_manager
        self._signer = signer
        self._sink = sink
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            jitter=0.1,
        )
        self._lock = threading.Lock()
        self._records: dict[str, RequestRecord] = {}
        self._queue: queue.Queue[RequestEvent | None] = queue.Queue(maxsize=self.config.queue_size)
        self._workers: list[threading.Thread] = []

    def state_of(self, request_id: str) -> RequestState | None:
        """Return the state of the current cycle for ``request_id``, if any."""
        with self._lock:
            record = self._records.get(request_id)
            return record.state if record is not None else None

    def result_of(self, request_id: str) -> StatusResult | None:
        """Return the terminal result of the current cycle for ``request_id``, if any."""
        with self._lock:
            record = self._records.get(request_id)
            return record.result if record is not None else None

    def handle(self, event: RequestEvent) -> None:
        """Process one event synchronously in the calling thread."""
        request = event.request
        if event.kind is EventKind.DELETED:
            self._withdraw(request.request_id)
            return

        with self._lock:
            record = self._records.get(request.request_id)
            action = self._classify(record, request)
            if action is _Action.START:
                record = self._records[request.request_id] = RequestRecord(request)

        if action is _Action.START and record is not None:
            self._process(record)
        elif action is _Action.REPORT and record is not None:
            logger.info("Re-writing unreported result for request %s", request.request_id)
            self._report(record)

    def _classify(self, record: RequestRecord | None, request: IdentityRequest) -> _Action:
        """Decide what a delivery means given the current record. Caller holds the lock."""
        if record is None:
            return _Action.START
        if not record.state.is_terminal:
            if record.cancelled.is_set() or record.request != request:
                logger.info(
                    "Request %s changed while in flight, queued for a new cycle",
                    request.request_id,
                )
                record.next_request = request
            else:
                logger.debug("Request %s already in progress", request.request_id)
            return _Action.IGNORE
        if record.request != request:
            return _Action.START
        if not record.reported:
            return _Action.REPORT
        if isinstance(record.result, FailedResult) and record.result.retryable:
            return _Action.START
        logger.debug("Request %s already %s", request.request_id, record.state.value)
        return _Action.IGNORE

    def _withdraw(self, request_id: str) -> None:
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                return
            record.cancelled.set()
            record.next_request = None
            if record.state.is_terminal:
                del self._records[request_id]
        logger.info("Request %s withdrawn", request_id, extra={"request_id": request_id})

    def _process(self, record: RequestRecord) -> None:
        request_id = record.request.request_id
        while True:
            self._reconcile(record)
            with self._lock:
                if self._records.get(request_id) is not record:
                    return
                next_request = record.next_request
                if next_request is None:
                    if record.cancelled.is_set():
                        del self._records[request_id]
                    return
                record = self._records[request_id] = RequestRecord(next_request)

    def _advance(self, record: RequestRecord, target: RequestState) -> None:
        with self._lock:
            record.state = transition(record.state, target)

    def _reconcile(self, record: RequestRecord) -> None:
        request = record.request
        logger.info(
            "Issuing certificate for pod %s (request %s/%s)",
            request.attributes.pod_uid or request.attributes.pod_name,
            request.namespace,
            request.name,
            extra={"request_id": request.request_id},
        )
        try:
            self._signer.validate(request)
            self._advance(record, RequestState.ACQUIRING_CA)
            ca = self._acquire_ca(request)
            self._advance(record, RequestState.SIGNING)
            leaf = self._signer.sign(ca, request)
        except PKIControllerError as e:
            self._fail(record, FailedResult(reason=e.reason, message=str(e), retryable=e.retryable))
        except Exception as e:
            logger.exception("Unexpected error while reconciling request %s", request.request_id)
            self._fail(record, FailedResult(reason="InternalError", message=str(e)))
        else:
            result = SucceededResult(
                certificate_chain=leaf.chain_pem(),
                not_before=leaf.not_before,
                not_after=leaf.not_after,
                begin_refresh_at=begin_refresh_at(leaf.not_before, leaf.not_after),
            )
            with self._lock:
                record.result = result
                record.state = transition(record.state, RequestState.SUCCEEDED)
            logger.info(
                "Successfully issued certificate for request %s, valid until %s",
                request.request_id,
                leaf.not_after.isoformat(),
                extra={"request_id": request.request_id},
            )
        self._report(record)

    def _fail(self, record: RequestRecord, result: FailedResult) -> None:
        with self._lock:
            record.result = result
            record.state = transition(record.state, RequestState.FAILED)
        logger.warning(
            "Failed to issue certificate for request %s: %s: %s",
            record.request.request_id,
            result.reason,
            result.message,
            extra={"request_id": record.request.request_id},
        )

    def _acquire_ca(self, request: IdentityRequest) -> IntermediateCA:
        """Acquire the CA, retrying transient backend errors within the budget.

        Raises:
            CAUnavailable: If the budget is spent or the error is not retryable
        """
        try:
            return self._retry_policy.call(
                self._ca_manager.acquire,
                is_retryable=_is_transient,
                description=f"intermediate CA acquisition for {request.request_id}",
            )
        except (BackendError, InvalidCAResponse) as e:
            raise CAUnavailable(f"intermediate CA unavailable: {e}") from e

    def _report(self, record: RequestRecord) -> None:
        """Write the record's result if the request is still extant."""
        request_id = record.request.request_id
        with self._lock:
            extant = (
                self._records.get(request_id) is record
                and not record.cancelled.is_set()
                and record.next_request is None
            )
            result = record.result
        if not extant or result is None:
            logger.info(
                "Request %s no longer current, dropping its result",
                request_id,
                extra={"request_id": request_id},
            )
            return
        try:
            self._sink.write(record.request, result)
        except StatusWriteError as e:
            logger.error(
                "Failed to write status for request %s: %s", request_id, e, extra={"request_id": request_id}
            )
            return
        with self._lock:
            record.reported = True

    def submit(self, event: RequestEvent, block: bool = True, timeout: float | None = None) -> None:
        """Queue an event for the worker threads.

        Raises:
            ReconcilerBusy: If the queue stays full (non-blocking or timed out)
        """
        try:
            self._queue.put(event, block=block, timeout=timeout)
        except queue.Full:
            raise ReconcilerBusy(
                f"request queue full ({self.config.queue_size} events)"
            ) from None

    def _worker(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self.handle(event)
            except Exception:
                logger.exception("Unhandled error while processing request event")
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Start the worker threads."""
        if self._workers:
            return
        for index in range(self.config.workers):
            worker = threading.Thread(
                target=self._worker, name=f"reconciler-{index}", daemon=True
            )
            worker.start()
            self._workers.append(worker)
        logger.info("Started %d reconciler workers", len(self._workers))

    def join(self) -> None:
        """Block until every queued event has been processed."""
        self._queue.join()

    def stop(self) -> None:
        """Stop the worker threads after the events already queued."""
        for _ in self._workers:
            self._queue.put(None)
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        logger.info("Reconciler stopped")

    def __enter__(self) -> "Reconciler":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
