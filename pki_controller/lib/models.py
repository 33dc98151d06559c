"""Data model for identity requests, intermediate CAs and issued certificates."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

from .errors import IllegalTransition


class KeyAlgorithm(str, Enum):
    """Algorithm tag carried with a requester public key."""

    RSA3072 = "RSA3072"
    RSA4096 = "RSA4096"
    ECDSAP256 = "ECDSAP256"
    ECDSAP384 = "ECDSAP384"
    ECDSAP521 = "ECDSAP521"
    ED25519 = "ED25519"


@dataclass(frozen=True)
class PublicKeyInfo:
    """Requester public key as DER SubjectPublicKeyInfo bytes plus its tag."""

    algorithm: str
    der: bytes = field(repr=False)


@dataclass(frozen=True)
class IdentityAttributes:
    """Workload identity fields mapped into certificate subject and SANs."""

    namespace: str
    pod_name: str
    pod_uid: str = ""
    service_account_name: str = ""
    node_name: str = ""
    service_name: str | None = None
    trust_domain: str | None = None


@dataclass(frozen=True)
class IdentityRequest:
    """One request for a leaf certificate, as delivered by the request source.

    Immutable: two deliveries with equal fields are the same logical request.
    Processing state is tracked by the reconciler, not here.
    """

    request_id: str
    name: str
    namespace: str
    public_key: PublicKeyInfo
    attributes: IdentityAttributes
    requested_duration: timedelta | None = None
    signer_name: str = ""


@dataclass(frozen=True)
class IntermediateCABundle:
    """Intermediate CA material as returned by the PKI backend client."""

    private_key: CertificateIssuerPrivateKeyTypes = field(repr=False)
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...] = ()
    expiration: datetime | None = None


@dataclass(frozen=True)
class IntermediateCA:
    """Immutable handle to one provisioned intermediate CA.

    The private key stays in memory only. A replacement CA is a new handle;
    handles already given out are never mutated.
    """

    private_key: CertificateIssuerPrivateKeyTypes = field(repr=False)
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...]
    issued_at: datetime
    expiry: datetime
    safety_margin: timedelta

    @property
    def usable_until(self) -> datetime:
        """Latest instant a leaf signed by this CA may be valid until."""
        return self.expiry - self.safety_margin

    def is_valid_at(self, t: datetime) -> bool:
        """Return True if the CA may be used for signing at ``t``."""
        return t < self.usable_until

    @property
    def full_chain(self) -> tuple[x509.Certificate, ...]:
        """CA certificate followed by the chain above it."""
        return (self.certificate, *self.chain)


@dataclass(frozen=True)
class LeafCertificate:
    """Signed leaf certificate and its chain up to, not including, the root."""

    request_id: str
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...]
    not_before: datetime
    not_after: datetime

    def chain_pem(self) -> tuple[bytes, ...]:
        """Return each chain certificate PEM-encoded, leaf first."""
        return tuple(cert.public_bytes(serialization.Encoding.PEM) for cert in self.chain)


class EventKind(str, Enum):
    """Watch event type delivered for a request."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class RequestEvent:
    """Notification from the request source."""

    kind: EventKind
    request: IdentityRequest


class RequestState(str, Enum):
    """Reconciliation state of one request."""

    PENDING = "Pending"
    ACQUIRING_CA = "AcquiringCA"
    SIGNING = "Signing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.SUCCEEDED, RequestState.FAILED)


ALLOWED_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.PENDING: frozenset({RequestState.ACQUIRING_CA, RequestState.FAILED}),
    RequestState.ACQUIRING_CA: frozenset({RequestState.SIGNING, RequestState.FAILED}),
    RequestState.SIGNING: frozenset({RequestState.SUCCEEDED, RequestState.FAILED}),
    RequestState.SUCCEEDED: frozenset(),
    RequestState.FAILED: frozenset(),
}


def transition(current: RequestState, target: RequestState) -> RequestState:
    """Return ``target`` if the state machine allows moving there from ``current``.

    Raises:
        IllegalTransition: If the move is not in ALLOWED_TRANSITIONS
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransition(f"{current.value} -> {target.value} is not allowed")
    return target


@dataclass(frozen=True)
class SucceededResult:
    """Terminal success written to the status sink."""

    certificate_chain: tuple[bytes, ...]
    not_before: datetime
    not_after: datetime
    begin_refresh_at: datetime

    state = RequestState.SUCCEEDED


@dataclass(frozen=True)
class FailedResult:
    """Terminal failure written to the status sink."""

    reason: str
    message: str
    retryable: bool = False

    state = RequestState.FAILED


StatusResult = SucceededResult | FailedResult
