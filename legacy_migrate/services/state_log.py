"""Folding of the legacy state-change log into per-order timelines."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..catalog import canonical_status_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateEvent:
    """One row of the state log, already coerced."""
    legacy_id: int
    order_legacy_id: int
    status_code: int
    changed_at: datetime
    actor_id: Optional[int] = None
    is_active: bool = True

    @property
    def sort_key(self):
        # Equal timestamps fall back to the source key.
        return (self.changed_at, self.legacy_id)


@dataclass(frozen=True)
class StateTransition:
    """A history entry: the order entered ``to_code`` at ``entered_at``."""
    event: StateEvent
    from_code: Optional[int]
    to_code: int
    entered_at: datetime
    exited_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None  # time spent in from_code

    @property
    def is_current(self) -> bool:
        return self.exited_at is None


@dataclass
class StateTimeline:
    """Ordered transitions of one order."""
    order_legacy_id: int
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def current(self) -> Optional[StateTransition]:
        return self.transitions[-1] if self.transitions else None

    @property
    def current_code(self) -> Optional[int]:
        return self.current.to_code if self.current else None

    def transition_for(self, legacy_id: Any) -> Optional[StateTransition]:
        for transition in self.transitions:
            if str(transition.event.legacy_id) == str(legacy_id):
                return transition
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "order_legacy_id": self.order_legacy_id,
            "current_code": self.current_code,
            "transitions": [
                {
                    "legacy_id": t.event.legacy_id,
                    "from_code": t.from_code,
                    "to_code": t.to_code,
                    "entered_at": t.entered_at.isoformat(),
                    "exited_at": t.exited_at.isoformat() if t.exited_at else None,
                    "duration_minutes": t.duration_minutes,
                }
                for t in self.transitions
            ],
        }


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(0, int(round((end - start).total_seconds() / 60)))


def fold_timeline(order_legacy_id: int, events: Iterable[StateEvent]) -> StateTimeline:
    """
    Fold the events of one order into its timeline.

    Events are ordered by (changed_at, legacy_id). Each transition exits when
    the next one enters; the last transition is the current state. Codes are
    mapped onto the canonical order-state codes.
    """
    ordered = sorted(events, key=lambda e: e.sort_key)
    timeline = StateTimeline(order_legacy_id=order_legacy_id)

    previous: Optional[StateEvent] = None
    for index, event in enumerate(ordered):
        following = ordered[index + 1] if index + 1 < len(ordered) else None
        timeline.transitions.append(StateTransition(
            event=event,
            from_code=canonical_status_code(previous.status_code) if previous else None,
            to_code=canonical_status_code(event.status_code),
            entered_at=event.changed_at,
            exited_at=following.changed_at if following else None,
            duration_minutes=(
                _minutes_between(previous.changed_at, event.changed_at) if previous else None
            ),
        ))
        previous = event

    return timeline


def fold_state_log(events: Iterable[StateEvent]) -> Dict[int, StateTimeline]:
    """
    Group a state log by order and fold each group.

    Args:
        events: State events in any order

    Returns:
        order legacy id -> StateTimeline
    """
    grouped: Dict[int, List[StateEvent]] = {}
    for event in events:
        grouped.setdefault(event.order_legacy_id, []).append(event)

    timelines = {oid: fold_timeline(oid, group) for oid, group in grouped.items()}
    logger.debug(f"Folded state log into {len(timelines)} order timelines")
    return timelines
