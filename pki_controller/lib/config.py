"""Controller configuration dataclasses."""

import logging
import os
import re
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_ACCOUNT_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
DEFAULT_SIGNER_NAME = "openbao.org/pod-certificate"

_DURATION_PART = re.compile(r"(\d+)([hms])")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


class ConfigError(ValueError):
    """Configuration value is missing or invalid."""


def parse_duration(value: str) -> timedelta:
    """Parse ``"3600"``, ``"168h"`` or ``"1h30m"`` style durations.

    Raises:
        ConfigError: If the value is not a positive duration
    """
    text = value.strip()
    if text.isdigit():
        seconds = int(text)
    else:
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            raise ConfigError(f"invalid duration: {value!r}")
        seconds = sum(int(n) * _DURATION_UNITS[u] for n, u in parts)
    if seconds <= 0:
        raise ConfigError(f"duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def _parse_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _parse_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _parse_duration_env(environ: Mapping[str, str], name: str, default: timedelta) -> timedelta:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return parse_duration(raw)
    except ConfigError as e:
        raise ConfigError(f"{name}: {e}") from None


@dataclass
class BaoConfig:
    """Connection settings for the OpenBao/Vault PKI backend."""

    address: str
    token: str | None = None
    ca_cert_path: str | None = None
    pki_mount: str = "pki"
    kubernetes_auth_role: str | None = None
    kubernetes_auth_mount: str = "kubernetes"
    service_account_token_path: str = DEFAULT_SERVICE_ACCOUNT_TOKEN_PATH
    timeout: float = 30.0


@dataclass
class CAConfig:
    """Intermediate CA and leaf certificate validity settings."""

    common_name: str = field(default_factory=socket.gethostname)
    intermediate_ttl: timedelta = timedelta(hours=168)
    safety_margin: timedelta = timedelta(hours=25)
    max_leaf_duration: timedelta = timedelta(hours=24)
    trust_domain: str = "cluster.local"
    cluster_domain: str = "cluster.local"
    signer_name: str = DEFAULT_SIGNER_NAME

    def __post_init__(self) -> None:
        if not self.common_name:
            raise ConfigError("CA common name must not be empty")
        if self.safety_margin <= timedelta(0):
            raise ConfigError("safety margin must be positive")
        if self.max_leaf_duration <= timedelta(0):
            raise ConfigError("maximum leaf duration must be positive")
        if self.intermediate_ttl <= self.safety_margin:
            raise ConfigError("intermediate TTL must be longer than the safety margin")
        if self.safety_margin <= self.max_leaf_duration:
            logger.warning(
                "Safety margin %s does not exceed maximum leaf duration %s; "
                "leaves issued late in a CA's life will be shortened",
                self.safety_margin,
                self.max_leaf_duration,
            )


@dataclass
class ReconcilerConfig:
    """Worker pool and retry settings for the request reconciler."""

    workers: int = 2
    queue_size: int = 1000
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0


@dataclass
class ControllerConfig:
    """Complete controller configuration."""

    bao: BaoConfig
    ca: CAConfig = field(default_factory=CAConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ControllerConfig":
        """Build configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Raises:
            ConfigError: If BAO_ADDR is missing or a value is invalid
        """
        env = os.environ if environ is None else environ

        address = env.get("BAO_ADDR")
        if not address:
            raise ConfigError("Please set BAO_ADDR")

        bao = BaoConfig(
            address=address,
            token=env.get("BAO_TOKEN") or None,
            ca_cert_path=env.get("BAO_CACERT") or None,
            pki_mount=env.get("BAO_PKI_MOUNT") or "pki",
            kubernetes_auth_role=env.get("BAO_K8S_AUTH_ROLE") or None,
            kubernetes_auth_mount=env.get("BAO_K8S_AUTH_MOUNT") or "kubernetes",
            service_account_token_path=env.get("BAO_SA_TOKEN_PATH")
            or DEFAULT_SERVICE_ACCOUNT_TOKEN_PATH,
            timeout=_parse_float(env, "BAO_TIMEOUT", 30.0),
        )
        ca = CAConfig(
            common_name=env.get("CA_COMMON_NAME") or socket.gethostname(),
            intermediate_ttl=_parse_duration_env(env, "INTERMEDIATE_TTL", timedelta(hours=168)),
            safety_margin=_parse_duration_env(env, "SAFETY_MARGIN", timedelta(hours=25)),
            max_leaf_duration=_parse_duration_env(env, "MAX_LEAF_DURATION", timedelta(hours=24)),
            trust_domain=env.get("TRUST_DOMAIN") or "cluster.local",
            cluster_domain=env.get("CLUSTER_DOMAIN") or "cluster.local",
            signer_name=env.get("SIGNER_NAME") or DEFAULT_SIGNER_NAME,
        )
        reconciler = ReconcilerConfig(
            workers=_parse_int(env, "WORKERS", 2),
            queue_size=_parse_int(env, "QUEUE_SIZE", 1000),
            retry_attempts=_parse_int(env, "RETRY_ATTEMPTS", 3),
            retry_base_delay=_parse_float(env, "RETRY_BASE_DELAY", 0.5),
            retry_max_delay=_parse_float(env, "RETRY_MAX_DELAY", 10.0),
        )
        return cls(bao=bao, ca=ca, reconciler=reconciler)
