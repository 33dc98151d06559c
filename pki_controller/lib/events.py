"""Decoding of PodCertificateRequest watch events into request events."""

import base64
import binascii
import logging
from datetime import timedelta
from typing import TypedDict

from .models import EventKind, IdentityAttributes, IdentityRequest, PublicKeyInfo, RequestEvent

logger = logging.getLogger(__name__)


class ObjectMeta(TypedDict, total=False):
    name: str
    namespace: str
    uid: str


class PodCertificateRequestSpec(TypedDict, total=False):
    signerName: str
    podName: str
    podUID: str
    serviceAccountName: str
    nodeName: str
    maxExpirationSeconds: int
    keyType: str
    pkixPublicKey: str


class PodCertificateRequestObject(TypedDict, total=False):
    """PodCertificateRequest as delivered in a watch event."""

    apiVersion: str
    kind: str
    metadata: ObjectMeta
    spec: PodCertificateRequestSpec


class WatchEvent(TypedDict):
    type: str
    object: PodCertificateRequestObject


def _decode_public_key(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return b""


def parse_watch_event(event: WatchEvent, signer_name: str) -> RequestEvent | None:
    """Convert a watch event into a RequestEvent.

    Args:
        event: Decoded watch event
        signer_name: Signer name this controller serves

    Returns:
        RequestEvent, or None for requests addressed to another signer

    Raises:
        ValueError: If the event is missing required fields
    """
    try:
        kind = EventKind(event["type"])
        obj = event["object"]
        metadata = obj["metadata"]
        spec = obj.get("spec") or {}
        if not isinstance(spec, dict):
            raise TypeError(f"spec must be an object, got {type(spec).__name__}")
        name = metadata["name"]
        namespace = metadata["namespace"]
        request_id = metadata.get("uid") or f"{namespace}/{name}"
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"malformed watch event: {e}") from e

    if spec.get("signerName", signer_name) != signer_name:
        logger.debug("Skipping %s/%s for signer %s", namespace, name, spec.get("signerName"))
        return None

    max_expiration = spec.get("maxExpirationSeconds")
    try:
        requested_duration = (
            timedelta(seconds=int(max_expiration)) if max_expiration is not None else None
        )
    except (TypeError, ValueError, OverflowError) as e:
        raise ValueError(f"invalid maxExpirationSeconds {max_expiration!r}") from e

    request = IdentityRequest(
        request_id=request_id,
        name=name,
        namespace=namespace,
        public_key=PublicKeyInfo(
            algorithm=spec.get("keyType", ""),
            der=_decode_public_key(spec.get("pkixPublicKey", "")),
        ),
        attributes=IdentityAttributes(
            namespace=namespace,
            pod_name=spec.get("podName", ""),
            pod_uid=spec.get("podUID", ""),
            service_account_name=spec.get("serviceAccountName", ""),
            node_name=spec.get("nodeName", ""),
        ),
        requested_duration=requested_duration,
        signer_name=spec.get("signerName", signer_name),
    )
    return RequestEvent(kind=kind, request=request)
