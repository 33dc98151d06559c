"""Certificate utility functions for key handling, serialization and chain checks."""

import hashlib
from datetime import UTC, datetime

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.asymmetric.types import (
    CertificateIssuerPrivateKeyTypes,
    PublicKeyTypes,
)
from cryptography.x509.oid import NameOID

from .errors import InvalidPublicKey
from .models import KeyAlgorithm, PublicKeyInfo

_EC_CURVES: dict[KeyAlgorithm, type[ec.EllipticCurve]] = {
    KeyAlgorithm.ECDSAP256: ec.SECP256R1,
    KeyAlgorithm.ECDSAP384: ec.SECP384R1,
    KeyAlgorithm.ECDSAP521: ec.SECP521R1,
}

_RSA_SIZES: dict[KeyAlgorithm, int] = {
    KeyAlgorithm.RSA3072: 3072,
    KeyAlgorithm.RSA4096: 4096,
}


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA P-256 private key for an intermediate CA."""
    return ec.generate_private_key(ec.SECP256R1())


def deserialize_certificates(pem_data: bytes) -> list[x509.Certificate]:
    """Deserialize every certificate in a PEM bundle, in order."""
    return x509.load_pem_x509_certificates(pem_data)


def serialize_csr(csr: x509.CertificateSigningRequest) -> bytes:
    """Serialize CSR to PEM format."""
    return csr.public_bytes(serialization.Encoding.PEM)


def build_ca_csr(
    private_key: CertificateIssuerPrivateKeyTypes, common_name: str
) -> x509.CertificateSigningRequest:
    """Build the CSR used to have the backend sign our intermediate CA key."""
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .sign(private_key, signature_hash_for(private_key))
    )


def signature_hash_for(private_key: CertificateIssuerPrivateKeyTypes) -> hashes.HashAlgorithm | None:
    """Return the hash algorithm to sign with for ``private_key``.

    Ed25519 and Ed448 keys sign without a separate digest.
    """
    if isinstance(private_key, ed25519.Ed25519PrivateKey | ed448.Ed448PrivateKey):
        return None
    if isinstance(private_key, ec.EllipticCurvePrivateKey) and private_key.curve.key_size > 384:
        return hashes.SHA512()
    if isinstance(private_key, ec.EllipticCurvePrivateKey) and private_key.curve.key_size > 256:
        return hashes.SHA384()
    return hashes.SHA256()


def load_public_key(info: PublicKeyInfo) -> PublicKeyTypes:
    """Parse a requester public key and check it against its algorithm tag.

    Args:
        info: DER SubjectPublicKeyInfo and algorithm tag

    Returns:
        Parsed public key

    Raises:
        InvalidPublicKey: If the key is empty, unparseable, of an unsupported
            algorithm, or does not match the tag
    """
    if not info.der:
        raise InvalidPublicKey("public key is missing")
    try:
        algorithm = KeyAlgorithm(info.algorithm)
    except ValueError:
        raise InvalidPublicKey(f"unsupported key algorithm {info.algorithm!r}") from None
    try:
        public_key = serialization.load_der_public_key(info.der)
    except (ValueError, TypeError) as e:
        raise InvalidPublicKey(f"public key is not a valid DER SubjectPublicKeyInfo: {e}") from e
    except UnsupportedAlgorithm as e:
        raise InvalidPublicKey(f"public key could not be loaded: {e}") from e

    if algorithm in _EC_CURVES:
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise InvalidPublicKey(f"expected an EC public key for {algorithm.value}")
        if not isinstance(public_key.curve, _EC_CURVES[algorithm]):
            raise InvalidPublicKey(
                f"EC curve {public_key.curve.name} does not match {algorithm.value}"
            )
    elif algorithm in _RSA_SIZES:
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise InvalidPublicKey(f"expected an RSA public key for {algorithm.value}")
        if public_key.key_size != _RSA_SIZES[algorithm]:
            raise InvalidPublicKey(
                f"RSA key size {public_key.key_size} does not match {algorithm.value}"
            )
    elif algorithm is KeyAlgorithm.ED25519:
        if not isinstance(public_key, ed25519.Ed25519PublicKey):
            raise InvalidPublicKey("expected an Ed25519 public key")
    return public_key


def derive_serial_number(*parts: bytes) -> int:
    """Derive a positive 127-bit certificate serial number from ``parts``.

    The same inputs always give the same serial. Inputs that include the
    issuer serial, the request and the validity start keep serials unique
    per issued certificate.
    """
    digest = hashlib.sha256()
    for part in parts:
        digest.update(len(part).to_bytes(4, "big"))
        digest.update(part)
    serial = int.from_bytes(digest.digest()[:16], "big") >> 1
    return serial or 1


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as hex with colons (e.g., 3A:F2:B1:...)."""
    serial_hex = f"{cert.serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def is_self_signed(cert: x509.Certificate) -> bool:
    """Return True if ``cert`` is self-issued and verifies under its own key."""
    if cert.issuer != cert.subject:
        return False
    try:
        cert.verify_directly_issued_by(cert)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def is_ca_certificate(cert: x509.Certificate) -> bool:
    """Return True if ``cert`` carries BasicConstraints with ca=True."""
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return constraints.value.ca


def validate_certificate_chain(chain: list[x509.Certificate] | tuple[x509.Certificate, ...]) -> bool:
    """Verify each certificate in ``chain`` is directly issued by the next one.

    Returns True if chain is valid, False otherwise.
    """
    try:
        for cert, issuer in zip(chain, chain[1:]):
            cert.verify_directly_issued_by(issuer)
        return True
    except (ValueError, TypeError, InvalidSignature):
        return False


def public_key_der(public_key: PublicKeyTypes) -> bytes:
    """Encode a public key as DER SubjectPublicKeyInfo."""
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def read_public_key_der(data: bytes) -> bytes:
    """Return DER SubjectPublicKeyInfo from PEM or DER input.

    PEM input is converted; anything else is returned unchanged so that the
    signer reports malformed keys in its own terms.
    """
    if data.lstrip().startswith(b"-----BEGIN"):
        return public_key_der(serialization.load_pem_public_key(data))
    return data
