#!/usr/bin/env python3
"""Run the controller over a stream of PodCertificateRequest watch events.

Events are read as JSON lines from a file or stdin; status documents are
written as JSON lines to stdout. Logs go to stderr.
"""

import argparse
import json
import sys
from collections.abc import Iterable
from pathlib import Path

from pki_controller.lib.ca_manager import IntermediateCAManager
from pki_controller.lib.config import ConfigError, ControllerConfig
from pki_controller.lib.events import parse_watch_event
from pki_controller.lib.logging_config import LOGGER
from pki_controller.lib.reconciler import Reconciler
from pki_controller.lib.signer import LeafCertificateSigner
from pki_controller.lib.status import JsonLinesStatusSink
from pki_controller.lib.vault_client import BaoPKIClient


def feed_events(lines: Iterable[str], reconciler: Reconciler, signer_name: str) -> int:
    """Submit every decodable watch event in ``lines`` to the reconciler.

    Returns:
        Number of events submitted
    """
    submitted = 0
    for line_number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            event = parse_watch_event(json.loads(line), signer_name)
        except ValueError as e:
            LOGGER.warning("Skipping event on line %d: %s", line_number, e)
            continue
        if event is None:
            continue
        reconciler.submit(event)
        submitted += 1
    return submitted


def main() -> int:
    """Process watch events until the input is exhausted.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(description="Run the OpenBao PKI controller")
    parser.add_argument(
        "--events",
        type=Path,
        help="JSON-lines file of watch events (default: stdin)",
    )
    args = parser.parse_args()

    try:
        config = ControllerConfig.from_env()
    except ConfigError as e:
        LOGGER.error("Invalid configuration: %s", e)
        return 1

    backend = BaoPKIClient(config.bao)
    if not backend.is_api_available():
        LOGGER.warning("Backend %s not reachable yet, requests will retry", config.bao.address)

    reconciler = Reconciler(
        IntermediateCAManager(backend, config.ca),
        LeafCertificateSigner(config.ca),
        JsonLinesStatusSink(sys.stdout),
        config.reconciler,
    )
    try:
        with reconciler:
            if args.events:
                with args.events.open() as stream:
                    submitted = feed_events(stream, reconciler, config.ca.signer_name)
            else:
                submitted = feed_events(sys.stdin, reconciler, config.ca.signer_name)
            reconciler.join()
    except OSError as e:
        LOGGER.error("Cannot read events: %s", e)
        return 1

    LOGGER.info("Processed %d request events", submitted)
    return 0


if __name__ == "__main__":
    sys.exit(main())
