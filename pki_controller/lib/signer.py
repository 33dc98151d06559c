"""Leaf certificate signer: builds and signs certificates from identity requests."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import cast

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.types import CertificatePublicKeyTypes

from .cert_utils import derive_serial_number, load_public_key, utc_now
from .certificate_builder import CertificateBuilder
from .config import CAConfig
from .errors import CAExhausted, InvalidIdentityAttributes, SigningError
from .identity import CertificateIdentity, build_identity
from .models import IdentityRequest, IntermediateCA, LeafCertificate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatedRequest:
    """Request whose public key and identity have been checked."""

    public_key: CertificatePublicKeyTypes
    identity: CertificateIdentity


class LeafCertificateSigner:
    """Signs leaf certificates for identity requests with an intermediate CA.

    Signing only reads the CA handle; it never mutates it or any other shared
    state, so any number of signatures may run concurrently.
    """

    def __init__(self, config: CAConfig, clock: Callable[[], datetime] = utc_now) -> None:
        self.config = config
        self._clock = clock

    def validate(self, request: IdentityRequest) -> ValidatedRequest:
        """Check a request's public key and identity attributes.

        Raises:
            InvalidPublicKey: If the public key is missing or malformed
            InvalidIdentityAttributes: If the attributes cannot be mapped to
                subject/SAN fields or the requested duration is not positive
        """
        public_key = cast(CertificatePublicKeyTypes, load_public_key(request.public_key))
        identity = build_identity(
            request.attributes,
            default_trust_domain=self.config.trust_domain,
            cluster_domain=self.config.cluster_domain,
        )
        if request.requested_duration is not None and request.requested_duration <= timedelta(0):
            raise InvalidIdentityAttributes(
                f"requested duration must be positive, got {request.requested_duration}"
            )
        return ValidatedRequest(public_key=public_key, identity=identity)

    def leaf_validity(
        self, ca: IntermediateCA, request: IdentityRequest, now: datetime
    ) -> tuple[datetime, datetime]:
        """Return (not_before, not_after) for a leaf signed at ``now``.

        ``not_after`` is the earliest of the requested end, the CA's usable
        end and the configured maximum. Times are truncated to whole seconds,
        the resolution X.509 encodes.

        Raises:
            CAExhausted: If no positive validity remains under ``ca``
        """
        not_before = now.replace(microsecond=0)
        duration = min(
            request.requested_duration or self.config.max_leaf_duration,
            self.config.max_leaf_duration,
        )
        not_after = min(now + duration, ca.usable_until).replace(microsecond=0)
        if not_after <= not_before:
            raise CAExhausted(
                f"intermediate CA usable until {ca.usable_until.isoformat()} "
                f"leaves no validity at {now.isoformat()}"
            )
        return not_before, not_after

    def sign(
        self, ca: IntermediateCA, request: IdentityRequest, now: datetime | None = None
    ) -> LeafCertificate:
        """Build and sign a leaf certificate for ``request``.

        Args:
            ca: Intermediate CA handle to sign with
            request: Identity request carrying public key and attributes
            now: Signing time (defaults to the signer's clock)

        Returns:
            LeafCertificate with chain [leaf] + CA chain

        Raises:
            InvalidPublicKey, InvalidIdentityAttributes: On malformed input
            CAExhausted: If the CA has no usable validity left
            SigningError: If the certificate could not be signed
        """
        validated = self.validate(request)
        signing_time = now if now is not None else self._clock()
        not_before, not_after = self.leaf_validity(ca, request, signing_time)

        serial_number = derive_serial_number(
            ca.certificate.serial_number.to_bytes(20, "big"),
            request.request_id.encode(),
            request.public_key.der,
            int(not_before.timestamp()).to_bytes(8, "big", signed=True),
        )
        try:
            certificate = CertificateBuilder.build_leaf_certificate(
                public_key=validated.public_key,
                identity=validated.identity,
                issuer_cert=ca.certificate,
                issuer_key=ca.private_key,
                serial_number=serial_number,
                not_before=not_before,
                not_after=not_after,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"failed to sign certificate: {e}") from e

        logger.debug(
            "Signed certificate for request %s valid until %s",
            request.request_id,
            not_after.isoformat(),
        )
        return LeafCertificate(
            request_id=request.request_id,
            certificate=certificate,
            chain=(certificate, *ca.full_chain),
            not_before=not_before,
            not_after=not_after,
        )

