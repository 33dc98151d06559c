"""OpenBao/Vault PKI client for provisioning intermediate CAs.

The backend is only ever asked to sign our intermediate CA; it never signs
leaf certificates, which is why the intermediate key is held locally.
"""

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import hvac  # type: ignore[import-untyped]
from cryptography import x509
from hvac import exceptions as hvac_exceptions  # type: ignore[import-untyped]
from requests.exceptions import RequestException

from .cert_utils import (
    build_ca_csr,
    deserialize_certificates,
    generate_private_key,
    is_ca_certificate,
    is_self_signed,
    public_key_der,
    serialize_csr,
    validate_certificate_chain,
)
from .config import BaoConfig
from .errors import BackendError, InvalidCAResponse
from .models import IntermediateCABundle

logger = logging.getLogger(__name__)

TRANSIENT_VAULT_ERRORS = (
    hvac_exceptions.InternalServerError,
    hvac_exceptions.VaultDown,
    hvac_exceptions.BadGateway,
    hvac_exceptions.RateLimitExceeded,
    hvac_exceptions.UnexpectedError,
)


def _translate(operation: str, error: Exception) -> BackendError:
    """Translate an hvac/requests failure into a BackendError."""
    if isinstance(error, (RequestException, *TRANSIENT_VAULT_ERRORS)):
        return BackendError(f"{operation} failed: {error}", transient=True)
    return BackendError(f"{operation} rejected by backend: {error}", transient=False)


class BaoPKIClient:
    """Narrow client over the PKI secrets engine of OpenBao/Vault."""

    def __init__(self, config: BaoConfig, client: hvac.Client | None = None) -> None:
        """Initialize PKI client.

        Args:
            config: Backend address, credentials and PKI mount
            client: Preconfigured hvac client (built from config if omitted)
        """
        self.config = config
        self._client = client or hvac.Client(
            url=config.address,
            token=config.token,
            verify=config.ca_cert_path or True,
            timeout=config.timeout,
        )

    def _ensure_authenticated(self) -> None:
        """Log in with Kubernetes auth when no static token is configured."""
        if self.config.token or not self.config.kubernetes_auth_role:
            return
        try:
            if self._client.is_authenticated():
                return
            jwt = Path(self.config.service_account_token_path).read_text().strip()
            self._client.auth.kubernetes.login(
                role=self.config.kubernetes_auth_role,
                jwt=jwt,
                mount_point=self.config.kubernetes_auth_mount,
            )
        except OSError as e:
            raise BackendError(
                f"cannot read service account token: {e}", transient=False
            ) from e
        except (hvac_exceptions.VaultError, RequestException) as e:
            raise _translate("kubernetes login", e) from e
        logger.info("Authenticated to backend with kubernetes role %s", self.config.kubernetes_auth_role)

    def is_api_available(self) -> bool:
        """Return whether the backend API answers health checks."""
        try:
            self._client.sys.read_health_status(standby_ok=True)
            return True
        except (hvac_exceptions.VaultError, RequestException) as e:
            logger.error("Error while checking backend health status: %s", e)
            return False

    def generate_intermediate_ca(self, common_name: str, ttl: timedelta) -> IntermediateCABundle:
        """Provision a new intermediate CA signed by the PKI mount's issuer.

        A fresh key pair is generated locally; only its CSR is sent.

        Args:
            common_name: CN for the intermediate CA
            ttl: Requested intermediate validity

        Returns:
            IntermediateCABundle with private key, certificate and chain

        Raises:
            BackendError: If the backend is unreachable or rejects the request
            InvalidCAResponse: If the returned certificate or chain is malformed
        """
        self._ensure_authenticated()

        private_key = generate_private_key()
        csr_pem = serialize_csr(build_ca_csr(private_key, common_name)).decode()

        logger.info("Requesting intermediate CA %s from mount %s", common_name, self.config.pki_mount)
        try:
            response = self._client.secrets.pki.sign_intermediate(
                csr=csr_pem,
                common_name=common_name,
                extra_params={"ttl": f"{int(ttl.total_seconds())}s", "format": "pem"},
                mount_point=self.config.pki_mount,
            )
        except (hvac_exceptions.VaultError, RequestException) as e:
            raise _translate("sign-intermediate", e) from e

        certificate, chain, expiration = parse_sign_intermediate_response(response)
        if public_key_der(certificate.public_key()) != public_key_der(private_key.public_key()):
            raise InvalidCAResponse("signed intermediate does not match the submitted key")

        logger.info("Intermediate CA certificate issued by backend, expires %s", expiration)
        return IntermediateCABundle(
            private_key=private_key,
            certificate=certificate,
            chain=chain,
            expiration=expiration,
        )


def parse_sign_intermediate_response(
    response: Any,
) -> tuple[x509.Certificate, tuple[x509.Certificate, ...], datetime | None]:
    """Parse a sign-intermediate response into certificate, chain and expiration.

    The chain holds the issuing CAs above the intermediate with self-signed
    roots removed, since relying parties carry their own trust anchors.

    Raises:
        InvalidCAResponse: If fields are missing or do not form a CA chain
    """
    try:
        data = response["data"]
        certificate_pem: str = data["certificate"]
    except (KeyError, TypeError) as e:
        raise InvalidCAResponse(f"sign-intermediate response missing field: {e}") from e

    try:
        certificates = deserialize_certificates(certificate_pem.encode())
        issuing = data.get("issuing_ca") or ""
        issuing_certs = deserialize_certificates(issuing.encode()) if issuing else []
        ca_chain = [
            cert
            for pem in data.get("ca_chain") or []
            for cert in deserialize_certificates(pem.encode())
        ]
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidCAResponse(f"sign-intermediate returned unparseable PEM: {e}") from e

    if not certificates:
        raise InvalidCAResponse("sign-intermediate returned no certificate")
    certificate = certificates[0]
    if not is_ca_certificate(certificate):
        raise InvalidCAResponse("signed intermediate is not a CA certificate")

    chain: list[x509.Certificate] = []
    for cert in [*certificates[1:], *issuing_certs, *ca_chain]:
        if cert == certificate or cert in chain or is_self_signed(cert):
            continue
        chain.append(cert)

    issuer = chain[0] if chain else next(iter(issuing_certs), None)
    if issuer is not None and not validate_certificate_chain([certificate, issuer]):
        raise InvalidCAResponse("intermediate not issued by stated issuing CA")
    if not validate_certificate_chain([certificate, *chain]):
        raise InvalidCAResponse("ca_chain does not lead from the intermediate towards the root")

    expiration = None
    raw_expiration = data.get("expiration")
    if raw_expiration:
        try:
            expiration = datetime.fromtimestamp(int(raw_expiration), UTC)
        except (ValueError, TypeError, OverflowError) as e:
            raise InvalidCAResponse(f"invalid expiration {raw_expiration!r}") from e

    return certificate, tuple(chain), expiration
