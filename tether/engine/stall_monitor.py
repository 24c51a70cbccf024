"""Stall detection for in-flight agent turns.

Runs periodically and compares the time since the last agent event
with a timeout that depends on what the agent is doing (its Phase).
A stall does not tear anything down here: the monitor records the
restart against the RestartBudget and posts a StallFired event on the
orchestrator's control queue, which performs the actual restart.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .errors import RestartBudgetExhausted, StallDetected
from .models import Phase, RestartBudget

if TYPE_CHECKING:
    from .config import OrchestratorConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class PhaseTimeouts:
    """Seconds of silence tolerated per phase."""
    minimum: float = 120.0
    thinking: float = 240.0
    tool: float = 300.0
    tool_active: float = 600.0
    patch: float = 300.0
    patch_active: float = 600.0
    complete: float = 180.0

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> PhaseTimeouts:
        return cls(
            minimum=config.stall_timeout_min_seconds,
            thinking=config.stall_timeout_thinking_seconds,
            tool=config.stall_timeout_tool_seconds,
            tool_active=config.stall_timeout_tool_active_seconds,
            patch=config.stall_timeout_patch_seconds,
            patch_active=config.stall_timeout_patch_active_seconds,
            complete=config.stall_timeout_complete_seconds,
        )


@dataclass
class TurnActivity:
    """State shared between the event handler, the loop and the monitor."""
    phase: Phase = Phase.IDLE
    last_event_at: float = 0.0
    in_flight: bool = False
    active_tool_calls: int = 0
    active_patch_calls: int = 0
    restart_in_progress: bool = False
    ignore_events_until_next_request: bool = False

    def begin_request(self, now: float) -> None:
        self.in_flight = True
        self.phase = Phase.REQUEST
        self.last_event_at = now
        self.ignore_events_until_next_request = False

    def mark_event(self, now: float) -> None:
        self.last_event_at = now
        self.restart_in_progress = False

    def go_idle(self) -> None:
        self.in_flight = False
        self.phase = Phase.IDLE
        self.active_tool_calls = 0
        self.active_patch_calls = 0


@dataclass
class StallFired:
    """Control event: the current turn stopped producing events."""
    phase: Phase
    idle_seconds: float
    timeout_seconds: float
    restart_count: int
    restart_limit: int

    def as_error(self) -> StallDetected:
        return StallDetected(self.phase.value, self.idle_seconds)


class StallMonitor:
    """Periodic watchdog over TurnActivity."""

    def __init__(
        self,
        activity: TurnActivity,
        budget: RestartBudget,
        control: asyncio.Queue,
        timeouts: PhaseTimeouts | None = None,
        check_interval: float = 5.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.activity = activity
        self.budget = budget
        self.timeouts = timeouts or PhaseTimeouts()
        self.check_interval = check_interval
        self._control = control
        self._clock = clock
        self._exhausted_warned_for: float | None = None

    def timeout_for(self, phase: Phase) -> float:
        """Timeout for *phase* given the current sub-operation counts."""
        t = self.timeouts
        if phase == Phase.TOOL:
            return t.tool_active if self.activity.active_tool_calls > 0 else t.tool
        if phase == Phase.PATCH:
            return t.patch_active if self.activity.active_patch_calls > 0 else t.patch
        if phase == Phase.THINKING:
            return t.thinking
        if phase == Phase.COMPLETE:
            return t.complete
        return t.minimum

    def check(self, now: float | None = None) -> StallFired | None:
        """Run one tick. Returns the posted StallFired, if any."""
        activity = self.activity
        if not activity.in_flight or activity.restart_in_progress:
            return None

        now = self._clock() if now is None else now
        self.budget.expire(now)
        idle = now - activity.last_event_at
        timeout = self.timeout_for(activity.phase)
        if idle < timeout:
            return None

        if self.budget.exhausted:
            # One warning per silent stretch, not one per tick.
            if self._exhausted_warned_for != activity.last_event_at:
                self._exhausted_warned_for = activity.last_event_at
                logger.warning(
                    "Stall detected (%s) but not restarting: %s",
                    StallDetected(activity.phase.value, idle),
                    RestartBudgetExhausted(self.budget.count, self.budget.limit),
                )
            return None

        self.budget.record(now)
        activity.restart_in_progress = True
        activity.ignore_events_until_next_request = True
        fired = StallFired(
            phase=activity.phase,
            idle_seconds=idle,
            timeout_seconds=timeout,
            restart_count=self.budget.count,
            restart_limit=self.budget.limit,
        )
        logger.warning(
            "Stall detected (%s); requesting restart %d/%d",
            fired.as_error(),
            fired.restart_count,
            fired.restart_limit,
        )
        self._control.put_nowait(fired)
        return fired

    async def run(self) -> None:
        """Background task that checks for stalls every check_interval."""
        logger.info(
            "Stall monitor started (interval=%.1fs, limit=%d, cooldown=%.0fs)",
            self.check_interval,
            self.budget.limit,
            self.budget.cooldown_seconds,
        )
        while True:
            try:
                await asyncio.sleep(self.check_interval)
                self.check()
            except asyncio.CancelledError:
                logger.info("Stall monitor stopped")
                return
            except Exception:
                logger.exception("Stall monitor error")
