"""Tests for the two-step confirmation gate."""

import pytest

from burnengine.storage.exceptions import ProtocolViolation
from burnengine.storage.gate import AckStage, Acknowledgment, ConfirmationGate, GateState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def gate(usb_device):
    return ConfirmationGate(usb_device)


class TestHappyPath:
    def test_double_confirmation(self, gate):
        assert gate.state is GateState.UNCONFIRMED

        assert gate.acknowledge(Acknowledgment.first()) is GateState.FIRST_ACK
        assert gate.acknowledge(Acknowledgment.final("/dev/sdb 14.9GB")) is GateState.DOUBLE_CONFIRMED
        assert gate.is_confirmed

    def test_echo_ignores_case_and_spacing(self, gate):
        gate.acknowledge(Acknowledgment.first())

        assert gate.acknowledge(Acknowledgment.final("  /DEV/SDB   14.9gb ")) is GateState.DOUBLE_CONFIRMED

    def test_expected_echo(self, gate, small_usb_device):
        assert gate.expected_echo == "/dev/sdb 14.9GB"
        assert ConfirmationGate(small_usb_device).expected_echo == "/dev/sdb 1GB"

    def test_acknowledgment_constructors(self):
        assert Acknowledgment.first() == Acknowledgment(AckStage.FIRST, True)
        assert Acknowledgment.final("x", accepted=False) == Acknowledgment(AckStage.FINAL, False, "x")


class TestOrdering:
    """The gate can never be short-circuited."""

    def test_final_before_first_is_violation(self, gate):
        with pytest.raises(ProtocolViolation, match="before first"):
            gate.acknowledge(Acknowledgment.final(gate.expected_echo))
        assert not gate.is_confirmed

    def test_repeated_first_is_violation(self, gate):
        gate.acknowledge(Acknowledgment.first())

        with pytest.raises(ProtocolViolation, match="already given"):
            gate.acknowledge(Acknowledgment.first())

    def test_acknowledge_after_confirmation_is_violation(self, gate):
        gate.acknowledge(Acknowledgment.first())
        gate.acknowledge(Acknowledgment.final(gate.expected_echo))

        with pytest.raises(ProtocolViolation):
            gate.acknowledge(Acknowledgment.final(gate.expected_echo))

    def test_acknowledge_after_cancel_is_violation(self, gate):
        gate.acknowledge(Acknowledgment.first(accepted=False))

        with pytest.raises(ProtocolViolation, match="cancelled"):
            gate.acknowledge(Acknowledgment.first())

    def test_cancel_after_confirmation_is_violation(self, gate):
        gate.acknowledge(Acknowledgment.first())
        gate.acknowledge(Acknowledgment.final(gate.expected_echo))

        with pytest.raises(ProtocolViolation):
            gate.cancel()


class TestCancellation:
    def test_declined_first_step(self, gate):
        assert gate.acknowledge(Acknowledgment.first(accepted=False)) is GateState.CANCELLED
        assert gate.is_cancelled

    def test_declined_final_step(self, gate):
        gate.acknowledge(Acknowledgment.first())

        assert gate.acknowledge(Acknowledgment.final(gate.expected_echo, accepted=False)) is GateState.CANCELLED

    @pytest.mark.parametrize("echo", ["yes", "/dev/sdc 14.9GB", "/dev/sdb", "", None])
    def test_wrong_echo_cancels(self, gate, echo):
        gate.acknowledge(Acknowledgment.first())

        assert gate.acknowledge(Acknowledgment.final(echo)) is GateState.CANCELLED

    def test_cancel_is_idempotent(self, gate):
        assert gate.cancel() is GateState.CANCELLED
        assert gate.cancel() is GateState.CANCELLED


class TestTimeout:
    def test_first_answer_times_out(self, usb_device):
        clock = FakeClock()
        gate = ConfirmationGate(usb_device, timeout=30, clock=clock)
        clock.now += 31

        assert gate.acknowledge(Acknowledgment.first()) is GateState.CANCELLED

    def test_timer_restarts_after_first_step(self, usb_device):
        clock = FakeClock()
        gate = ConfirmationGate(usb_device, timeout=30, clock=clock)
        clock.now += 20
        gate.acknowledge(Acknowledgment.first())
        clock.now += 20

        assert gate.acknowledge(Acknowledgment.final(gate.expected_echo)) is GateState.DOUBLE_CONFIRMED

    def test_final_answer_times_out(self, usb_device):
        clock = FakeClock()
        gate = ConfirmationGate(usb_device, timeout=30, clock=clock)
        gate.acknowledge(Acknowledgment.first())
        clock.now += 45

        assert gate.acknowledge(Acknowledgment.final(gate.expected_echo)) is GateState.CANCELLED

    def test_restart_timer(self, usb_device):
        clock = FakeClock()
        gate = ConfirmationGate(usb_device, timeout=30, clock=clock)
        clock.now += 300
        gate.restart_timer()

        assert gate.acknowledge(Acknowledgment.first()) is GateState.FIRST_ACK

    def test_no_timeout_waits_forever(self, usb_device):
        clock = FakeClock()
        gate = ConfirmationGate(usb_device, clock=clock)
        clock.now += 10**6

        assert gate.acknowledge(Acknowledgment.first()) is GateState.FIRST_ACK


def test_prompt_lines(gate):
    first = gate.prompt_lines()
    assert "ERASED" in first[1]
    assert "SanDisk Cruzer Blade" in first[0]

    gate.acknowledge(Acknowledgment.first())
    assert "Type '/dev/sdb 14.9GB'" in gate.prompt_lines()[1]

    gate.acknowledge(Acknowledgment.final(gate.expected_echo))
    assert gate.prompt_lines() == []
