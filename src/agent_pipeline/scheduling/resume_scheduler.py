"""Quota-aware resume scheduling.

Each work unit moves through Running -> Paused -> Armed -> Resuming. When the
armed timer fires the scheduler re-checks live quota: recovered quota returns
the unit to Running, anything else (including a failed check) pauses it again
with a fresh timer. A manual cancel returns the unit to Running without a
re-check and always defeats a pending timer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from .usage import QuotaSnapshot, UsageSource, usage_source_from_config
from ..errors.translator import ErrorCategory, ErrorTranslator

logger = logging.getLogger(__name__)

QUOTA_CATEGORIES = (ErrorCategory.QUOTA_EXHAUSTED, ErrorCategory.RATE_LIMIT)


class ResumeState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    ARMED = "armed"
    RESUMING = "resuming"


class ResumeEventType(str, Enum):
    PAUSED = "paused"
    ARMED = "armed"
    STILL_PAUSED = "still_paused"
    RESUMED = "resumed"
    CANCELLED = "cancelled"


@dataclass
class ScheduledResume:
    """Pause record for one work unit."""
    unit_key: str
    resume_at: datetime
    reason: str
    snapshot: Optional[QuotaSnapshot] = None
    state: ResumeState = ResumeState.PAUSED
    rearm_count: int = 0
    paused_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ResumeEvent:
    type: ResumeEventType
    unit_key: str
    reason: str = ""
    resume_at: Optional[datetime] = None
    snapshot: Optional[QuotaSnapshot] = None


ResumeListener = Callable[[ResumeEvent], None]


class ResumeScheduler:
    """Registry of paused work units with at most one armed timer per unit."""

    def __init__(
        self,
        usage_source: UsageSource,
        fallback_recheck_seconds: float = 900.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.usage_source = usage_source
        self.fallback_recheck_seconds = fallback_recheck_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, ScheduledResume] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        # Bumped on every arm/cancel; a timer only acts if its generation is current
        self._generations: Dict[str, int] = {}
        self._listeners: List[ResumeListener] = []
        self._translator = ErrorTranslator()

    @classmethod
    def from_config(cls, config, usage_source: Optional[UsageSource] = None) -> "ResumeScheduler":
        return cls(
            usage_source or usage_source_from_config(config),
            fallback_recheck_seconds=config.scheduler.fallback_recheck_seconds,
        )

    # Subscriptions

    def subscribe(self, listener: ResumeListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: ResumeEventType, entry: ScheduledResume) -> None:
        event = ResumeEvent(
            type=event_type,
            unit_key=entry.unit_key,
            reason=entry.reason,
            resume_at=entry.resume_at,
            snapshot=entry.snapshot,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Resume listener failed for {event.type.value} ({entry.unit_key}): {e}")

    # Queries

    def state(self, unit_key: str) -> ResumeState:
        entry = self._entries.get(unit_key)
        return entry.state if entry else ResumeState.RUNNING

    def get(self, unit_key: str) -> Optional[ScheduledResume]:
        return self._entries.get(unit_key)

    def pending(self) -> List[ScheduledResume]:
        return sorted(self._entries.values(), key=lambda e: e.resume_at)

    def is_run_permitted(self, unit_key: str) -> bool:
        """New pipeline runs are allowed only while the unit is Running."""
        return self.state(unit_key) == ResumeState.RUNNING

    # Transitions

    def pause(
        self,
        unit_key: str,
        reason: str,
        snapshot: Optional[QuotaSnapshot] = None,
        resume_at: Optional[datetime] = None,
        immediate: bool = False,
    ) -> ScheduledResume:
        """Running -> Paused, then arm a timer for the suggested resume time.

        ``immediate`` (or a suggested time already in the past) arms an
        immediate re-check. Pausing an already paused unit replaces its
        record and timer.
        """
        if immediate:
            resume_at = self._clock()
        elif resume_at is None and snapshot is not None:
            resume_at = snapshot.suggested_resume_at
        entry = ScheduledResume(
            unit_key=unit_key,
            resume_at=resume_at or self._next_resume_at(None),
            reason=reason,
            snapshot=snapshot,
            paused_at=self._clock(),
        )
        self._entries[unit_key] = entry
        logger.warning(f"Paused {unit_key}: {reason} (resume at {entry.resume_at.isoformat()})")
        self._emit(ResumeEventType.PAUSED, entry)
        self._arm(entry)
        return entry

    def pause_on_error(
        self,
        unit_key: str,
        error: Union[Exception, str],
        snapshot: Optional[QuotaSnapshot] = None,
    ) -> bool:
        """Pause when an error reads as quota or rate-limit exhaustion."""
        category = self._translator.categorize(error)
        if category not in QUOTA_CATEGORIES:
            return False
        self.pause(unit_key, f"{category.value}: {error}", snapshot=snapshot)
        return True

    def cancel(self, unit_key: str) -> bool:
        """Any state -> Running, without re-checking quota."""
        self._generations[unit_key] = self._generations.get(unit_key, 0) + 1
        timer = self._timers.pop(unit_key, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        entry = self._entries.pop(unit_key, None)
        if entry is None:
            return False
        entry.state = ResumeState.RUNNING
        logger.info(f"Cancelled scheduled resume for {unit_key}")
        self._emit(ResumeEventType.CANCELLED, entry)
        return True

    async def shutdown(self) -> None:
        """Cancel every timer; pause records are kept."""
        timers = list(self._timers.values())
        self._timers.clear()
        for key in self._generations:
            self._generations[key] += 1
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    def _next_resume_at(self, snapshot: Optional[QuotaSnapshot]) -> datetime:
        now = self._clock()
        suggested = snapshot.suggested_resume_at if snapshot is not None else None
        if suggested is not None and suggested > now:
            return suggested
        return now + timedelta(seconds=self.fallback_recheck_seconds)

    def _arm(self, entry: ScheduledResume) -> None:
        """Paused -> Armed. Replaces any timer already armed for the unit."""
        key = entry.unit_key
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation

        previous = self._timers.pop(key, None)
        if previous is not None and previous is not asyncio.current_task():
            previous.cancel()

        delay = max(0.0, (entry.resume_at - self._clock()).total_seconds())
        self._timers[key] = asyncio.create_task(self._fire(key, generation, delay))
        entry.state = ResumeState.ARMED
        logger.debug(f"Armed resume for {key} in {delay:.1f}s")
        self._emit(ResumeEventType.ARMED, entry)

    def _is_current(self, key: str, generation: int) -> bool:
        return self._generations.get(key) == generation and key in self._entries

    async def _fire(self, key: str, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._is_current(key, generation):
            return
        entry = self._entries[key]
        entry.state = ResumeState.RESUMING

        snapshot: Optional[QuotaSnapshot] = None
        try:
            snapshot = await self.usage_source.get_snapshot()
        except Exception as e:
            logger.warning(f"Quota re-check failed for {key}, treating as still exhausted: {e}")

        # A cancel issued during the re-check wins
        if not self._is_current(key, generation):
            return

        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]

        if snapshot is not None and not snapshot.is_exhausted:
            del self._entries[key]
            entry.state = ResumeState.RUNNING
            entry.snapshot = snapshot
            logger.info(f"Quota recovered, resuming {key}")
            self._emit(ResumeEventType.RESUMED, entry)
            return

        if snapshot is not None:
            entry.snapshot = snapshot
        entry.resume_at = self._next_resume_at(entry.snapshot)
        entry.rearm_count += 1
        entry.state = ResumeState.PAUSED
        logger.warning(
            f"Quota still exhausted for {key}, re-arming for {entry.resume_at.isoformat()}"
        )
        self._emit(ResumeEventType.STILL_PAUSED, entry)
        self._arm(entry)
