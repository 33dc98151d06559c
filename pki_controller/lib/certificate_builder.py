"""Certificate builder for X.509 leaf certificate construction."""

from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import (
    CertificateIssuerPrivateKeyTypes,
    CertificatePublicKeyTypes,
)
from cryptography.x509.oid import ExtendedKeyUsageOID

from .cert_utils import signature_hash_for
from .identity import CertificateIdentity


class CertificateBuilder:
    """Builds X.509 leaf certificates signed by an intermediate CA."""

    @staticmethod
    def build_leaf_certificate(
        public_key: CertificatePublicKeyTypes,
        identity: CertificateIdentity,
        issuer_cert: x509.Certificate,
        issuer_key: CertificateIssuerPrivateKeyTypes,
        serial_number: int,
        not_before: datetime,
        not_after: datetime,
    ) -> x509.Certificate:
        """Build an end-entity certificate without a CSR.

        The requester never proves possession of the private key here; the
        public key and identity come straight from the delivered request.

        Args:
            public_key: Requester public key to certify
            identity: Subject and SANs derived from identity attributes
            issuer_cert: Intermediate CA certificate (issuer)
            issuer_key: Intermediate CA private key for signing
            serial_number: Certificate serial number
            not_before: Start of validity
            not_after: End of validity

        Returns:
            X.509 end-entity certificate signed by the intermediate CA
        """
        builder = (
            x509.CertificateBuilder()
            .subject_name(identity.subject)
            .issuer_name(issuer_cert.subject)
            .public_key(public_key)
            .serial_number(serial_number)
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=isinstance(public_key, rsa.RSAPublicKey),
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage(
                    [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                ),
                critical=False,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
                critical=False,
            )
        )
        if identity.sans:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(list(identity.sans)),
                critical=identity.san_critical,
            )

        return builder.sign(issuer_key, signature_hash_for(issuer_key))
