"""Tests for the request state machine and data model."""

from datetime import timedelta

import pytest

from pki_controller.lib.errors import IllegalTransition
import pki_controller.lib.models as models
from pki_controller.lib.models import EventKind, RequestState, transition


class TestTransition:
    """Tests for transition() - allowed state changes."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (RequestState.PENDING, RequestState.ACQUIRING_CA),
            (RequestState.ACQUIRING_CA, RequestState.SIGNING),
            (RequestState.SIGNING, RequestState.SUCCEEDED),
            (RequestState.PENDING, RequestState.FAILED),
            (RequestState.ACQUIRING_CA, RequestState.FAILED),
            (RequestState.SIGNING, RequestState.FAILED),
        ],
    )
    def test_allowed(self, current: RequestState, target: RequestState) -> None:
        """Forward moves and failure from any non-terminal state are allowed."""
        assert transition(current, target) is target

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (RequestState.SUCCEEDED, RequestState.SIGNING),
            (RequestState.FAILED, RequestState.PENDING),
            (RequestState.SUCCEEDED, RequestState.FAILED),
            (RequestState.PENDING, RequestState.SIGNING),
            (RequestState.SIGNING, RequestState.ACQUIRING_CA),
        ],
    )
    def test_illegal(self, current: RequestState, target: RequestState) -> None:
        """Leaving a terminal state, skipping or going back raises IllegalTransition."""
        with pytest.raises(IllegalTransition):
            transition(current, target)

    def test_terminal_states(self) -> None:
        """Only Succeeded and Failed are terminal."""
        assert {state for state in RequestState if state.is_terminal} == {
            RequestState.SUCCEEDED,
            RequestState.FAILED,
        }


class TestIntermediateCA:
    """Tests for IntermediateCA validity window."""

    def test_usable_until_subtracts_margin(self, ca_manager) -> None:
        """CA stops being valid at expiry - safety margin."""
        ca = ca_manager.acquire()

        assert ca.is_valid_at(ca.usable_until - timedelta(seconds=1))
        assert not ca.is_valid_at(ca.usable_until)

    def test_full_chain_starts_with_certificate(self, ca_manager) -> None:
        """Full chain is the CA certificate followed by its chain."""
        ca = ca_manager.acquire()

        assert ca.full_chain[0] is ca.certificate


def test_leaf_chain_pem(ca_manager, signer, make_request) -> None:
    """chain_pem() encodes every chain certificate as PEM."""
    leaf = signer.sign(ca_manager.acquire(), make_request())

    pems = leaf.chain_pem()

    assert len(pems) == len(leaf.chain)
    assert all(pem.startswith(b"-----BEGIN CERTIFICATE-----") for pem in pems)


class TestEventKind:
    """Tests for EventKind."""

    @pytest.mark.parametrize("raw", ["ADDED", "MODIFIED", "DELETED"])
    def test_watch_types_decode(self, raw: str) -> None:
        """Watch event type strings map onto members."""
        assert EventKind(raw).value == raw

    def test_unknown_type_rejected(self) -> None:
        """Unknown watch event type raises ValueError."""
        with pytest.raises(ValueError):
            EventKind("BOOKMARK")

    def test_intermediate_ca_is_the_handle(self) -> None:
        """CA handles are IntermediateCA objects with no separate alias."""
        assert not hasattr(models, "CAHandle")
