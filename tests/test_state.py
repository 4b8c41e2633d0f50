"""Tests for the per-IP lifecycle state machine."""

import pytest

from ip_risk_shield.exceptions import InvalidStateTransition
from ip_risk_shield.models import IPState
from ip_risk_shield.state import IPStateMachine


class TestIPStateMachine:
    """Test allowed and rejected transitions."""

    def test_unknown_by_default(self):
        assert IPStateMachine().get("198.51.100.1") == IPState.UNKNOWN

    def test_escalation_path(self):
        machine = IPStateMachine()
        ip = "198.51.100.2"

        assert machine.transition(ip, IPState.MONITORED) == IPState.UNKNOWN
        assert machine.transition(ip, IPState.UNDER_REVIEW) == IPState.MONITORED
        assert machine.transition(ip, IPState.BLOCKED) == IPState.UNDER_REVIEW
        assert machine.transition(ip, IPState.RELEASED) == IPState.BLOCKED
        assert machine.transition(ip, IPState.ALLOWED) == IPState.RELEASED

    def test_blocked_only_moves_to_released(self):
        machine = IPStateMachine()
        ip = "198.51.100.3"
        machine.transition(ip, IPState.BLOCKED)

        for target in (IPState.ALLOWED, IPState.MONITORED, IPState.UNDER_REVIEW, IPState.UNKNOWN):
            with pytest.raises(InvalidStateTransition):
                machine.transition(ip, target)

        assert machine.get(ip) == IPState.BLOCKED

    def test_reentering_state_is_noop(self):
        machine = IPStateMachine()
        machine.transition("198.51.100.4", IPState.BLOCKED)

        assert machine.transition("198.51.100.4", IPState.BLOCKED) == IPState.BLOCKED

    def test_cannot_return_to_unknown(self):
        machine = IPStateMachine()
        machine.transition("198.51.100.5", IPState.ALLOWED)

        with pytest.raises(InvalidStateTransition):
            machine.transition("198.51.100.5", IPState.UNKNOWN)

    def test_count_and_forget(self):
        machine = IPStateMachine()
        machine.transition("198.51.100.6", IPState.UNDER_REVIEW)
        machine.transition("198.51.100.7", IPState.UNDER_REVIEW)
        machine.transition("198.51.100.8", IPState.BLOCKED)

        assert machine.count(IPState.UNDER_REVIEW) == 2
        assert machine.forget("198.51.100.6") == IPState.UNDER_REVIEW
        assert machine.forget("198.51.100.8") is None
        assert machine.count(IPState.UNDER_REVIEW) == 1
        assert len(machine) == 2
