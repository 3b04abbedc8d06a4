"""Two-step confirmation gate guarding the destructive write.

The operator must acknowledge twice, and the second acknowledgment must echo
the target's device path and size so that a blind "yes, yes" cannot destroy a
drive:

    UNCONFIRMED --FIRST(yes)--> FIRST_ACK --FINAL(yes, echo)--> DOUBLE_CONFIRMED
         |                          |
         +--- no / timeout ---------+-----------------------> CANCELLED

Skipping the intermediate step (FINAL while UNCONFIRMED) or repeating a step
is a ProtocolViolation, never a fast path.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from burnengine.domain.models import BlockDevice
from burnengine.logging import get_logger

from .devices import format_device_label
from .exceptions import ProtocolViolation


log = get_logger(source="gate", tags=["confirm"])


class GateState(Enum):
    UNCONFIRMED = "unconfirmed"
    FIRST_ACK = "first_ack"
    DOUBLE_CONFIRMED = "double_confirmed"
    CANCELLED = "cancelled"


class AckStage(Enum):
    FIRST = "first"
    FINAL = "final"


@dataclass(frozen=True)
class Acknowledgment:
    """One operator answer to a gate prompt."""

    stage: AckStage
    accepted: bool
    echo: str | None = None

    @classmethod
    def first(cls, accepted: bool = True) -> Acknowledgment:
        return cls(AckStage.FIRST, accepted)

    @classmethod
    def final(cls, echo: str | None, accepted: bool = True) -> Acknowledgment:
        return cls(AckStage.FINAL, accepted, echo)


def _normalize_echo(text: str | None) -> str:
    return " ".join((text or "").split()).lower()


class ConfirmationGate:
    """State machine for the double confirmation.

    Args:
        device: Target snapshot the operator is confirming
        timeout: Seconds allowed for each answer; None waits forever
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        device: BlockDevice,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.device = device
        self.timeout = timeout
        self._clock = clock
        self.state = GateState.UNCONFIRMED
        self._step_started = clock()

    @property
    def expected_echo(self) -> str:
        """Phrase the operator must type at the final step, e.g. "/dev/sdb 14.9GB"."""
        return format_device_label(self.device)

    @property
    def is_confirmed(self) -> bool:
        return self.state is GateState.DOUBLE_CONFIRMED

    @property
    def is_cancelled(self) -> bool:
        return self.state is GateState.CANCELLED

    def prompt_lines(self) -> list[str]:
        """Text the shell shows before the current step."""
        if self.state is GateState.UNCONFIRMED:
            return [
                f"Write to {self.device.format_label()}?",
                "ALL DATA ON THIS DEVICE WILL BE PERMANENTLY ERASED.",
            ]
        if self.state is GateState.FIRST_ACK:
            return [
                "FINAL WARNING - this cannot be undone.",
                f"Type '{self.expected_echo}' to confirm.",
            ]
        return []

    def restart_timer(self) -> None:
        """Start the answer window for the current step (call when prompting)."""
        self._step_started = self._clock()

    def _timed_out(self) -> bool:
        if self.timeout is None:
            return False
        return self._clock() - self._step_started > self.timeout

    def cancel(self, reason: str = "cancelled by operator") -> GateState:
        if self.state is GateState.DOUBLE_CONFIRMED:
            raise ProtocolViolation("Gate is already double confirmed")
        if self.state is not GateState.CANCELLED:
            log.info(f"Confirmation for {self.device.identifier} cancelled: {reason}")
            self.state = GateState.CANCELLED
        return self.state

    def acknowledge(self, ack: Acknowledgment) -> GateState:
        """Apply one operator answer and return the new state.

        Raises:
            ProtocolViolation: If the answer is for the wrong step or the gate
                is already in a terminal state
        """
        if self.state is GateState.CANCELLED:
            raise ProtocolViolation("Gate was cancelled; start a new job")
        if self.state is GateState.DOUBLE_CONFIRMED:
            raise ProtocolViolation("Gate is already double confirmed")

        if ack.stage is AckStage.FINAL and self.state is GateState.UNCONFIRMED:
            raise ProtocolViolation("Final confirmation attempted before first acknowledgment")
        if ack.stage is AckStage.FIRST and self.state is GateState.FIRST_ACK:
            raise ProtocolViolation("First acknowledgment already given")

        if self._timed_out():
            return self.cancel("confirmation timed out")
        if not ack.accepted:
            return self.cancel()

        if ack.stage is AckStage.FIRST:
            self.state = GateState.FIRST_ACK
            self.restart_timer()
            log.debug(f"First acknowledgment for {self.device.identifier}")
            return self.state

        if _normalize_echo(ack.echo) != _normalize_echo(self.expected_echo):
            return self.cancel(f"echo {ack.echo!r} does not match {self.expected_echo!r}")

        self.state = GateState.DOUBLE_CONFIRMED
        log.info(f"Write to {self.device.identifier} double confirmed")
        return self.state
