#!/usr/bin/env python3
"""
Per-camera failure consolidation.

Single-frame detections are noisy (lighting flicker, motion blur, a hand in
front of the lens). Each source moves through IDLE -> SUSPECTED -> CONFIRMED
and only the step into CONFIRMED raises a failure:

- A hit zeroes the miss streak and extends the hit streak.
- A miss zeroes the hit streak and extends the miss streak.
- SUSPECTED falls back to IDLE once the miss streak exceeds miss_tolerance.
  A tolerated miss keeps the source SUSPECTED, but the next hit starts a
  new streak at 1: hits toward confirmation must be consecutive.
- SUSPECTED becomes CONFIRMED when the hit streak reaches confirmation_count.
- CONFIRMED absorbs further hits. Once `cooldown` seconds have passed since
  the last alert a hit yields REMIND instead.
- CONFIRMED returns to IDLE after clear_count consecutive misses (CLEAR).

Cooldown is per episode: a new episode always raises.

Sources never share state. Fetch and inference errors must not call
update(); an unreachable camera is evidence of nothing.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

from detections import FilteredDetection

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    SUSPECTED = "suspected"
    CONFIRMED = "confirmed"


class Transition(enum.Enum):
    NONE = "none"
    RAISE = "raise"
    REMIND = "remind"
    CLEAR = "clear"


@dataclass
class SourceState:
    phase: Phase = Phase.IDLE
    consecutive_hits: int = 0
    consecutive_misses: int = 0
    failure_active: bool = False
    last_alert_at: Optional[float] = None
    episode: int = 0


@dataclass(frozen=True)
class FailureEvent:
    """What the alert dispatcher and printer client receive on RAISE or REMIND."""

    source_index: int
    class_id: int
    label: str
    confidence: float
    timestamp: float
    episode: int
    detections: Tuple[FilteredDetection, ...] = ()
    source_url: str = ""
    reminder: bool = False
    annotated_image: Optional[bytes] = None

    @property
    def best(self) -> Optional[FilteredDetection]:
        return self.detections[0] if self.detections else None


def build_event(
    source_index: int,
    detections: Sequence[FilteredDetection],
    episode: int,
    timestamp: float,
    source_url: str = "",
    reminder: bool = False,
    annotated_image: Optional[bytes] = None,
) -> FailureEvent:
    """Summarise a tick's detections; the most probable one names the failure."""
    ranked = tuple(sorted(detections, key=lambda d: d.class_probability, reverse=True))
    top = ranked[0]
    return FailureEvent(
        source_index=source_index,
        class_id=top.class_id,
        label=top.label,
        confidence=top.class_probability,
        timestamp=timestamp,
        episode=episode,
        detections=ranked,
        source_url=source_url,
        reminder=reminder,
        annotated_image=annotated_image,
    )


class FailureTracker:
    def __init__(
        self,
        confirmation_count: int = 3,
        miss_tolerance: int = 1,
        clear_count: int = 3,
        cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if confirmation_count < 1:
            raise ValueError("confirmation_count must be >= 1")
        if clear_count < 1:
            raise ValueError("clear_count must be >= 1")
        if miss_tolerance < 0:
            raise ValueError("miss_tolerance must be >= 0")
        self.confirmation_count = confirmation_count
        self.miss_tolerance = miss_tolerance
        self.clear_count = clear_count
        self.cooldown = cooldown
        self.clock = clock
        self._states: Dict[int, SourceState] = {}

    def state(self, source_index: int) -> SourceState:
        """State for a source, created IDLE on first access."""
        if source_index not in self._states:
            self._states[source_index] = SourceState()
        return self._states[source_index]

    def update(self, source_index: int, hit: bool, now: Optional[float] = None) -> Transition:
        """Fold one tick's verdict for a source into its state."""
        if now is None:
            now = self.clock()
        st = self.state(source_index)
        before = st.phase

        if hit:
            transition = self._on_hit(st, now)
        else:
            transition = self._on_miss(st)

        if st.phase is not before:
            logger.info(
                "Source %d: %s -> %s (hits=%d, misses=%d)",
                source_index, before.value, st.phase.value, st.consecutive_hits, st.consecutive_misses,
            )
        return transition

    def _on_hit(self, st: SourceState, now: float) -> Transition:
        st.consecutive_misses = 0

        if st.phase is Phase.IDLE:
            st.phase = Phase.SUSPECTED
            st.consecutive_hits = 1
        else:
            st.consecutive_hits += 1

        if st.phase is Phase.SUSPECTED:
            if st.consecutive_hits >= self.confirmation_count:
                st.phase = Phase.CONFIRMED
                st.failure_active = True
                st.last_alert_at = now
                st.episode += 1
                return Transition.RAISE
            return Transition.NONE

        # CONFIRMED
        if st.last_alert_at is None or now - st.last_alert_at >= self.cooldown:
            st.last_alert_at = now
            return Transition.REMIND
        return Transition.NONE

    def _on_miss(self, st: SourceState) -> Transition:
        if st.phase is Phase.IDLE:
            return Transition.NONE

        st.consecutive_hits = 0
        st.consecutive_misses += 1

        if st.phase is Phase.SUSPECTED:
            if st.consecutive_misses > self.miss_tolerance:
                st.phase = Phase.IDLE
                st.consecutive_misses = 0
            return Transition.NONE

        # CONFIRMED
        if st.consecutive_misses >= self.clear_count:
            st.phase = Phase.IDLE
            st.failure_active = False
            st.consecutive_misses = 0
            return Transition.CLEAR
        return Transition.NONE
