#!/usr/bin/env python3
"""Issue one leaf certificate for a workload identity."""

import argparse
import sys
import uuid
from pathlib import Path

from pki_controller.lib.ca_manager import IntermediateCAManager
from pki_controller.lib.cert_utils import read_public_key_der
from pki_controller.lib.config import ConfigError, ControllerConfig, parse_duration
from pki_controller.lib.logging_config import LOGGER
from pki_controller.lib.models import (
    EventKind,
    FailedResult,
    IdentityAttributes,
    IdentityRequest,
    KeyAlgorithm,
    PublicKeyInfo,
    RequestEvent,
    SucceededResult,
)
from pki_controller.lib.reconciler import Reconciler
from pki_controller.lib.signer import LeafCertificateSigner
from pki_controller.lib.status import InMemoryStatusSink
from pki_controller.lib.vault_client import BaoPKIClient


def main() -> int:
    """Issue a certificate for the given pod identity and public key.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Issue a workload certificate")
    parser.add_argument(
        "--public-key",
        type=Path,
        required=True,
        help="Requester public key (PEM or DER SubjectPublicKeyInfo)",
    )
    parser.add_argument(
        "--key-type",
        choices=[algorithm.value for algorithm in KeyAlgorithm],
        default=KeyAlgorithm.ECDSAP256.value,
        help="Public key algorithm (default: ECDSAP256)",
    )
    parser.add_argument("--namespace", required=True, help="Pod namespace")
    parser.add_argument("--pod-name", required=True, help="Pod name")
    parser.add_argument("--pod-uid", default="", help="Pod UID")
    parser.add_argument("--service-account", default="", help="Service account name")
    parser.add_argument("--service-name", help="Service name to add as a DNS SAN")
    parser.add_argument("--duration", help="Requested validity, e.g. 12h (default: maximum)")
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Output file for the PEM certificate chain",
    )
    args = parser.parse_args()

    try:
        config = ControllerConfig.from_env()
        requested_duration = parse_duration(args.duration) if args.duration else None
    except ConfigError as e:
        LOGGER.error("Invalid configuration: %s", e)
        return 1

    try:
        public_key = read_public_key_der(args.public_key.read_bytes())
    except (OSError, ValueError) as e:
        LOGGER.error("Cannot read public key %s: %s", args.public_key, e)
        return 1

    request = IdentityRequest(
        request_id=str(uuid.uuid4()),
        name=f"{args.pod_name}-certificate",
        namespace=args.namespace,
        public_key=PublicKeyInfo(algorithm=args.key_type, der=public_key),
        attributes=IdentityAttributes(
            namespace=args.namespace,
            pod_name=args.pod_name,
            pod_uid=args.pod_uid,
            service_account_name=args.service_account,
            service_name=args.service_name,
        ),
        requested_duration=requested_duration,
        signer_name=config.ca.signer_name,
    )

    backend = BaoPKIClient(config.bao)
    sink = InMemoryStatusSink()
    reconciler = Reconciler(
        IntermediateCAManager(backend, config.ca),
        LeafCertificateSigner(config.ca),
        sink,
        config.reconciler,
    )
    reconciler.handle(RequestEvent(kind=EventKind.ADDED, request=request))

    result = sink.get(request.request_id)
    if isinstance(result, SucceededResult):
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_bytes(b"".join(result.certificate_chain))
        LOGGER.info("Certificate chain written to %s", args.output)
        LOGGER.info("  Valid from: %s", result.not_before.isoformat())
        LOGGER.info("  Valid until: %s", result.not_after.isoformat())
        LOGGER.info("  Refresh from: %s", result.begin_refresh_at.isoformat())
        return 0
    if isinstance(result, FailedResult):
        LOGGER.error("Certificate issuance failed: %s: %s", result.reason, result.message)
    else:
        LOGGER.error("Certificate issuance produced no result")
    return 1


if __name__ == "__main__":
    sys.exit(main())
