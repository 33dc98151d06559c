"""Intermediate CA manager: lazily provisions and caches the signing CA."""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from datetime import datetime, timedelta
from typing import Protocol

from .cert_utils import get_certificate_serial_hex, utc_now
from .config import CAConfig
from .errors import InvalidCAResponse
from .models import IntermediateCA, IntermediateCABundle

logger = logging.getLogger(__name__)


class PKIBackend(Protocol):
    """What the manager needs from a PKI backend client."""

    def generate_intermediate_ca(self, common_name: str, ttl: timedelta) -> IntermediateCABundle: ...


class IntermediateCAManager:
    """Owns the current intermediate CA and provisions a new one when needed.

    At most one provisioning call is in flight. Callers arriving while it runs
    wait for the same outcome: the same handle on success, the same exception
    on failure. Failures are not cached, so the next ``acquire()`` provisions
    again. Replacing an expired CA publishes a new handle and leaves handles
    already given out untouched.
    """

    def __init__(
        self,
        backend: PKIBackend,
        config: CAConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize CA manager.

        Args:
            backend: PKI backend client used to provision intermediates
            config: CA configuration with common name, TTL and safety margin
            clock: Source of the current time
        """
        self.config = config
        self._backend = backend
        self._clock = clock
        self._lock = threading.Lock()
        self._current: IntermediateCA | None = None
        self._inflight: Future[IntermediateCA] | None = None

    def current(self) -> IntermediateCA | None:
        """Return the most recently installed CA, which may have expired."""
        with self._lock:
            return self._current

    def acquire(self) -> IntermediateCA:
        """Return a CA handle valid at the time of the call.

        Raises:
            BackendError: If the backend is unreachable or rejects provisioning
            InvalidCAResponse: If the backend's CA is malformed or too short-lived
        """
        with self._lock:
            current = self._current
            if current is not None and current.is_valid_at(self._clock()):
                return current
            if self._inflight is not None:
                future = self._inflight
                leader = False
            else:
                future = self._inflight = Future()
                leader = True

        if not leader:
            logger.debug("Waiting for in-flight intermediate CA provisioning")
            return future.result()

        if current is not None:
            logger.info(
                "Intermediate CA %s reached its safety margin, provisioning a new one",
                get_certificate_serial_hex(current.certificate),
            )
        try:
            ca = self._provision()
        except Exception as e:
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            raise

        with self._lock:
            self._current = ca
            self._inflight = None
        future.set_result(ca)
        return ca

    def _provision(self) -> IntermediateCA:
        bundle = self._backend.generate_intermediate_ca(
            self.config.common_name, self.config.intermediate_ttl
        )
        issued_at = self._clock()
        expiry = bundle.certificate.not_valid_after_utc
        if bundle.expiration is not None:
            expiry = min(expiry, bundle.expiration)

        ca = IntermediateCA(
            private_key=bundle.private_key,
            certificate=bundle.certificate,
            chain=bundle.chain,
            issued_at=issued_at,
            expiry=expiry,
            safety_margin=self.config.safety_margin,
        )
        if not ca.is_valid_at(issued_at):
            raise InvalidCAResponse(
                f"intermediate CA expires {expiry.isoformat()}, "
                f"inside the {self.config.safety_margin} safety margin"
            )
        logger.info(
            "Installed intermediate CA %s, usable until %s",
            get_certificate_serial_hex(ca.certificate),
            ca.usable_until.isoformat(),
        )
        return ca
