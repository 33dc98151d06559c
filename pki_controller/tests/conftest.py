"""Test fixtures for pki_controller tests."""

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from pki_controller.lib.ca_manager import IntermediateCAManager
from pki_controller.lib.cert_utils import public_key_der
from pki_controller.lib.config import CAConfig
from pki_controller.lib.models import (
    IdentityAttributes,
    IdentityRequest,
    IntermediateCABundle,
    PublicKeyInfo,
)
from pki_controller.lib.retry_policy import RetryPolicy
from pki_controller.lib.signer import LeafCertificateSigner
from pki_controller.lib.status import InMemoryStatusSink

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FrozenClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def build_ca_certificate(
    subject_key: ec.EllipticCurvePrivateKey,
    common_name: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    issuer_name: x509.Name | None,
    not_before: datetime,
    not_after: datetime,
) -> x509.Certificate:
    """Build a CA certificate, self-signed when ``issuer_name`` is None."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


class FakePKIBackend:
    """In-process PKI backend signing intermediates with a test root.

    - calls: number of generate_intermediate_ca() invocations
    - failures: exceptions raised by the next calls, in order
    - gate: when set, calls block until the event is set
    - started: set when a call begins
    """

    def __init__(
        self,
        root_key: ec.EllipticCurvePrivateKey,
        root_cert: x509.Certificate,
        clock: FrozenClock,
        validity: timedelta = timedelta(hours=168),
    ) -> None:
        self.root_key = root_key
        self.root_cert = root_cert
        self.clock = clock
        self.validity = validity
        self.calls = 0
        self.failures: list[Exception] = []
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self._lock = threading.Lock()
        self.available = True

    def is_api_available(self) -> bool:
        return self.available

    def generate_intermediate_ca(self, common_name: str, ttl: timedelta) -> IntermediateCABundle:
        with self._lock:
            self.calls += 1
            failure = self.failures.pop(0) if self.failures else None
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if failure is not None:
            raise failure

        key = ec.generate_private_key(ec.SECP256R1())
        now = self.clock()
        certificate = build_ca_certificate(
            key,
            common_name,
            self.root_key,
            self.root_cert.subject,
            now - timedelta(minutes=1),
            now + self.validity,
        )
        return IntermediateCABundle(private_key=key, certificate=certificate)


@pytest.fixture
def clock() -> FrozenClock:
    """Return a clock frozen at NOW."""
    return FrozenClock()


@pytest.fixture
def root_key() -> ec.EllipticCurvePrivateKey:
    """Generate EC private key for the test root CA."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def root_cert(root_key: ec.EllipticCurvePrivateKey) -> x509.Certificate:
    """Generate self-signed test root CA certificate."""
    return build_ca_certificate(
        root_key,
        "Test Root CA",
        root_key,
        None,
        NOW - timedelta(days=1),
        NOW + timedelta(days=3650),
    )


@pytest.fixture
def ca_config() -> CAConfig:
    """Return CA configuration with the default validity settings."""
    return CAConfig(common_name="test-controller")


@pytest.fixture
def backend(
    root_key: ec.EllipticCurvePrivateKey, root_cert: x509.Certificate, clock: FrozenClock
) -> FakePKIBackend:
    """Return fake PKI backend issuing 168h intermediates."""
    return FakePKIBackend(root_key, root_cert, clock)


@pytest.fixture
def ca_manager(
    backend: FakePKIBackend, ca_config: CAConfig, clock: FrozenClock
) -> IntermediateCAManager:
    """Return CA manager over the fake backend."""
    return IntermediateCAManager(backend, ca_config, clock=clock)


@pytest.fixture
def signer(ca_config: CAConfig, clock: FrozenClock) -> LeafCertificateSigner:
    """Return leaf signer using the frozen clock."""
    return LeafCertificateSigner(ca_config, clock=clock)


@pytest.fixture
def sink() -> InMemoryStatusSink:
    """Return empty in-memory status sink."""
    return InMemoryStatusSink()


@pytest.fixture
def sleeps() -> list[float]:
    """Return list collecting retry delays instead of sleeping."""
    return []


@pytest.fixture
def retry_policy(sleeps: list[float]) -> RetryPolicy:
    """Return 3-attempt retry policy that records delays instead of sleeping."""
    return RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=10.0, sleep=sleeps.append)


@pytest.fixture
def requester_key() -> ec.EllipticCurvePrivateKey:
    """Generate EC private key held by the requesting workload."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def make_request(requester_key: ec.EllipticCurvePrivateKey) -> Callable[..., IdentityRequest]:
    """Return factory for identity requests using the requester key."""
    default_der = public_key_der(requester_key.public_key())

    def _make_request(
        request_id: str = "req-1",
        pod_name: str = "web-0",
        namespace: str = "default",
        service_account: str = "web",
        requested_duration: timedelta | None = None,
        algorithm: str = "ECDSAP256",
        der: bytes | None = None,
        service_name: str | None = None,
    ) -> IdentityRequest:
        return IdentityRequest(
            request_id=request_id,
            name=f"{pod_name}-pcr",
            namespace=namespace,
            public_key=PublicKeyInfo(
                algorithm=algorithm, der=default_der if der is None else der
            ),
            attributes=IdentityAttributes(
                namespace=namespace,
                pod_name=pod_name,
                pod_uid=f"uid-{pod_name}",
                service_account_name=service_account,
                service_name=service_name,
            ),
            requested_duration=requested_duration,
        )

    return _make_request

