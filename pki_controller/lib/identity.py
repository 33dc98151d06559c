"""Mapping of workload identity attributes to certificate subject and SAN fields."""

import re
from dataclasses import dataclass

from cryptography import x509
from cryptography.x509.oid import NameOID

from .errors import InvalidIdentityAttributes
from .models import IdentityAttributes

# RFC 1123 label, as used for Kubernetes namespaces and service names
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
# RFC 1123 subdomain, as used for pod and service account names
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

COMMON_NAME_MAX_LENGTH = 64


@dataclass(frozen=True)
class CertificateIdentity:
    """Subject and SubjectAlternativeName derived from identity attributes."""

    subject: x509.Name
    sans: tuple[x509.GeneralName, ...]

    @property
    def san_critical(self) -> bool:
        # RFC 5280 4.2.1.6: SAN must be critical when the subject is empty
        return len(self.subject) == 0


def _check_label(field_name: str, value: str) -> None:
    if not _DNS_LABEL.match(value):
        raise InvalidIdentityAttributes(f"{field_name} {value!r} is not a valid RFC 1123 label")


def _check_subdomain(field_name: str, value: str) -> None:
    if len(value) > 253 or not _DNS_SUBDOMAIN.match(value):
        raise InvalidIdentityAttributes(
            f"{field_name} {value!r} is not a valid RFC 1123 subdomain"
        )


def spiffe_id(trust_domain: str, namespace: str, service_account: str) -> str:
    """Return the SPIFFE ID for a service account."""
    return f"spiffe://{trust_domain}/ns/{namespace}/sa/{service_account}"


def build_identity(
    attributes: IdentityAttributes, default_trust_domain: str, cluster_domain: str
) -> CertificateIdentity:
    """Map identity attributes to a certificate subject and SANs.

    Args:
        attributes: Identity attributes from the request
        default_trust_domain: Trust domain used when the request carries none
        cluster_domain: Cluster DNS domain for service names

    Returns:
        CertificateIdentity with subject and SAN entries

    Raises:
        InvalidIdentityAttributes: If a field is missing or not a valid name
    """
    if not attributes.namespace:
        raise InvalidIdentityAttributes("namespace is required")
    if not attributes.pod_name:
        raise InvalidIdentityAttributes("pod name is required")
    _check_label("namespace", attributes.namespace)
    _check_subdomain("pod name", attributes.pod_name)
    if attributes.service_account_name:
        _check_subdomain("service account name", attributes.service_account_name)
    if attributes.service_name is not None:
        _check_label("service name", attributes.service_name)

    trust_domain = attributes.trust_domain or default_trust_domain
    _check_subdomain("trust domain", trust_domain)

    common_name = f"system:pod:{attributes.namespace}:{attributes.pod_name}"
    if len(common_name) <= COMMON_NAME_MAX_LENGTH:
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    else:
        subject = x509.Name([])

    sans: list[x509.GeneralName] = []
    if attributes.service_account_name:
        sans.append(
            x509.UniformResourceIdentifier(
                spiffe_id(trust_domain, attributes.namespace, attributes.service_account_name)
            )
        )
    if attributes.service_name is not None:
        sans.append(
            x509.DNSName(f"{attributes.service_name}.{attributes.namespace}.svc.{cluster_domain}")
        )

    if not sans and len(subject) == 0:
        raise InvalidIdentityAttributes(
            "identity has neither a subject common name nor any subject alternative name"
        )
    return CertificateIdentity(subject=subject, sans=tuple(sans))
