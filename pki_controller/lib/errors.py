"""Error taxonomy for certificate issuance.

Backend and cryptography failures are translated into these classes at the
component that observes them, so the reconciler only ever sees this taxonomy.
Each class carries a stable ``reason`` that is reported verbatim in failed
request status.
"""


class PKIControllerError(Exception):
    """Base class for all controller errors."""

    reason = "PKIControllerError"
    retryable = False


class BackendError(PKIControllerError):
    """PKI backend unreachable, failing, or rejecting a request.

    Transient errors (connection failures, 5xx, rate limiting) are retried by
    the reconciler. Rejections are not.
    """

    reason = "BackendError"

    def __init__(self, message: str, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class InvalidCAResponse(PKIControllerError):
    """Backend returned a malformed intermediate CA chain or validity."""

    reason = "InvalidCAResponse"


class CAUnavailable(PKIControllerError):
    """No intermediate CA could be provisioned within the retry budget."""

    reason = "CAUnavailable"
    retryable = True


class SigningError(PKIControllerError):
    """Leaf certificate could not be constructed or signed."""

    reason = "SigningFailed"


class InvalidPublicKey(SigningError):
    """Requester public key is missing, unparseable, or does not match its algorithm tag."""

    reason = "InvalidPublicKey"


class InvalidIdentityAttributes(SigningError):
    """Identity attributes cannot be mapped to certificate subject/SAN fields."""

    reason = "InvalidIdentityAttributes"


class CAExhausted(SigningError):
    """Current intermediate CA has no usable validity left for a leaf."""

    reason = "CAExhausted"
    retryable = True


class StatusWriteError(PKIControllerError):
    """Status sink failed to record a terminal result."""

    reason = "StatusWriteFailed"


class ReconcilerBusy(PKIControllerError):
    """Request queue is full."""

    reason = "ReconcilerBusy"


class IllegalTransition(PKIControllerError):
    """Request state machine was asked to make a transition it does not allow."""

    reason = "IllegalTransition"
