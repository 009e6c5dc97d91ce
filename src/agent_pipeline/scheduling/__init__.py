"""Quota-aware resume scheduling."""

from .resume_scheduler import (
    ResumeEvent,
    ResumeEventType,
    ResumeScheduler,
    ResumeState,
    ScheduledResume,
)
from .usage import (
    AppServerUsageSource,
    QuotaSnapshot,
    RateLimitFileUsageSource,
    RateLimitWindow,
    UsageSource,
    usage_source_from_config,
)

__all__ = [
    "AppServerUsageSource",
    "QuotaSnapshot",
    "RateLimitFileUsageSource",
    "RateLimitWindow",
    "ResumeEvent",
    "ResumeEventType",
    "ResumeScheduler",
    "ResumeState",
    "ScheduledResume",
    "UsageSource",
    "usage_source_from_config",
]
