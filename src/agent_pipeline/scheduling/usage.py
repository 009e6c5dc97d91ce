"""Quota snapshots and the source that supplies them."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .. import __version__
from ..errors.exceptions import UsageCheckError
from ..utils.atomic_io import read_json
from ..utils.process_utils import force_kill

logger = logging.getLogger(__name__)

EXHAUSTED_PERCENT = 100.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitWindow:
    """Usage of one rolling window (session or weekly)."""
    used_percent: float
    window_minutes: Optional[int] = None
    resets_at: Optional[datetime] = None

    @property
    def is_exhausted(self) -> bool:
        return self.used_percent >= EXHAUSTED_PERCENT

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RateLimitWindow"]:
        if not isinstance(data, dict):
            return None
        used = data.get("usedPercent", data.get("used_percent"))
        if not isinstance(used, (int, float)) or isinstance(used, bool):
            return None
        resets = data.get("resetsAt", data.get("resets_at"))
        window = data.get("windowDurationMins", data.get("window_minutes"))
        return cls(
            used_percent=float(used),
            window_minutes=window if isinstance(window, int) else None,
            resets_at=datetime.fromtimestamp(resets, tz=timezone.utc) if isinstance(resets, (int, float)) else None,
        )


@dataclass
class QuotaSnapshot:
    """Point-in-time view of backend quota."""
    session: Optional[RateLimitWindow] = None
    weekly: Optional[RateLimitWindow] = None
    has_credits: Optional[bool] = None
    unlimited: bool = False
    checked_at: datetime = field(default_factory=_utcnow)

    @property
    def windows(self) -> List[RateLimitWindow]:
        return [w for w in (self.session, self.weekly) if w is not None]

    @property
    def is_exhausted(self) -> bool:
        if self.unlimited:
            return False
        if self.has_credits is False:
            return True
        return any(w.is_exhausted for w in self.windows)

    @property
    def suggested_resume_at(self) -> Optional[datetime]:
        """Latest reset among exhausted windows, or None if unknown."""
        resets = [w.resets_at for w in self.windows if w.is_exhausted and w.resets_at is not None]
        return max(resets) if resets else None

    @classmethod
    def from_rate_limits(cls, payload: Dict[str, Any]) -> "QuotaSnapshot":
        """Build from a ``rateLimits`` payload (primary/secondary windows plus credits)."""
        limits = payload.get("rateLimits", payload.get("rate_limits", payload))
        if not isinstance(limits, dict):
            logger.debug("Usage payload has no rate limit section")
            return cls()
        credits = limits.get("credits") if isinstance(limits.get("credits"), dict) else {}
        has_credits = credits.get("hasCredits")
        return cls(
            session=RateLimitWindow.from_dict(limits.get("primary")),
            weekly=RateLimitWindow.from_dict(limits.get("secondary")),
            has_credits=has_credits if isinstance(has_credits, bool) else None,
            unlimited=credits.get("unlimited") is True,
        )


class UsageSource(ABC):
    """Supplies live quota state for re-checks."""

    @abstractmethod
    async def get_snapshot(self) -> QuotaSnapshot:
        pass


class RateLimitFileUsageSource(UsageSource):
    """Reads a ``rateLimits`` payload that another process keeps up to date on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def get_snapshot(self) -> QuotaSnapshot:
        try:
            payload = read_json(self.path)
        except (OSError, ValueError) as e:
            raise UsageCheckError(f"Could not read usage file {self.path}: {e}") from e
        if not isinstance(payload, dict):
            raise UsageCheckError(f"Usage file {self.path} has no rate limit payload")
        return QuotaSnapshot.from_rate_limits(payload)


class AppServerUsageSource(UsageSource):
    """
    Queries rate limits over JSON-RPC from a CLI app server.

    Spawns the command, sends ``initialize`` followed by
    ``account/rateLimits/read`` on stdin, and waits for the response carrying
    the rate-limit request id. The process is killed once an answer (or the
    timeout) arrives.
    """

    INIT_REQUEST_ID = 1
    RATE_LIMITS_REQUEST_ID = 2
    CLIENT_NAME = "agent-pipeline"

    def __init__(self, command: Sequence[str] = ("codex", "app-server"), timeout: float = 20.0):
        self.command = list(command)
        self.timeout = timeout

    def _requests(self) -> bytes:
        requests = [
            {
                "id": self.INIT_REQUEST_ID,
                "method": "initialize",
                "params": {"clientInfo": {"name": self.CLIENT_NAME, "version": __version__}},
            },
            {"id": self.RATE_LIMITS_REQUEST_ID, "method": "account/rateLimits/read"},
        ]
        return "".join(json.dumps(r) + "\n" for r in requests).encode()

    async def get_snapshot(self) -> QuotaSnapshot:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise UsageCheckError(f"Failed to start {self.command[0]}: {e}") from e

        try:
            return await asyncio.wait_for(self._exchange(process), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise UsageCheckError(f"Usage request timed out after {self.timeout:g}s")
        finally:
            force_kill(process)
            await process.wait()

    async def _exchange(self, process: asyncio.subprocess.Process) -> QuotaSnapshot:
        process.stdin.write(self._requests())
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Usage server closed its input: {e}")

        while True:
            line = await process.stdout.readline()
            if not line:
                break
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict) or record.get("id") != self.RATE_LIMITS_REQUEST_ID:
                continue
            return self._parse_response(record)

        stderr = (await process.stderr.read()).decode(errors="replace").strip()
        raise UsageCheckError(stderr or "Usage response missing")

    @staticmethod
    def _parse_response(record: Dict[str, Any]) -> QuotaSnapshot:
        error = record.get("error")
        if isinstance(error, dict):
            raise UsageCheckError(str(error.get("message") or "Usage server failed"))
        result = record.get("result")
        limits = result.get("rateLimits", result.get("rate_limits")) if isinstance(result, dict) else None
        if not isinstance(limits, dict):
            raise UsageCheckError("Usage response was invalid")
        return QuotaSnapshot.from_rate_limits(result)


def usage_source_from_config(config) -> UsageSource:
    """A file-backed source when ``scheduler.usage_file`` is set, else the app server."""
    settings = config.scheduler
    if settings.usage_file is not None:
        return RateLimitFileUsageSource(settings.usage_file)
    return AppServerUsageSource(settings.usage_command, timeout=settings.usage_timeout_seconds)
