"""Iteration memory for pipeline steps.

Remembers what each step reported for each work unit so the next iteration
can tell the backend not to repeat itself and can filter out findings whose
hash was already seen. Optionally persisted as JSON with atomic writes.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .dedup import new_issues
from .models import Issue, IterationMemory
from ..utils.atomic_io import atomic_write_json, read_json

logger = logging.getLogger(__name__)

MEMORY_FILENAME = "pipeline-memory.json"


@dataclass
class IterationRecord:
    timestamp: str
    issues: List[Issue]
    summary: str


@dataclass
class StoredMemory:
    iterations: List[IterationRecord] = field(default_factory=list)
    seen_hashes: set = field(default_factory=set)


def memory_key(step_id: str, unit_id: str) -> str:
    return f"{step_id}:{unit_id}"


class PipelineMemory:
    """Per ``step_id:unit_id`` iteration history."""

    def __init__(self, memory_dir: Optional[Path] = None):
        self._store: Dict[str, StoredMemory] = {}
        self.memory_path = Path(memory_dir) / MEMORY_FILENAME if memory_dir else None

    def store_feedback(
        self,
        step_id: str,
        unit_id: str,
        issues: Iterable[Issue],
        summary: str = "",
    ) -> None:
        key = memory_key(step_id, unit_id)
        stored = self._store.setdefault(key, StoredMemory())
        issue_list = list(issues)
        stored.iterations.append(IterationRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            issues=issue_list,
            summary=summary,
        ))
        stored.seen_hashes.update(issue.hash for issue in issue_list)
        logger.debug(f"Stored iteration {len(stored.iterations)} for {key} ({len(issue_list)} issues)")
        self._persist()

    def get_memory_for_next_iteration(self, step_id: str, unit_id: str) -> Optional[IterationMemory]:
        """Last iteration's issues plus every hash seen so far, or None."""
        stored = self._store.get(memory_key(step_id, unit_id))
        if stored is None or not stored.iterations:
            return None
        return IterationMemory(
            previous_issues=list(stored.iterations[-1].issues),
            seen_hashes=sorted(stored.seen_hashes),
            iteration_count=len(stored.iterations),
        )

    def new_issues(self, step_id: str, unit_id: str, issues: Iterable[Issue]) -> List[Issue]:
        stored = self._store.get(memory_key(step_id, unit_id))
        if stored is None:
            return list(issues)
        return new_issues(issues, stored.seen_hashes)

    def clear(self, step_id: str, unit_id: str) -> None:
        self._store.pop(memory_key(step_id, unit_id), None)
        self._persist()

    def clear_unit(self, unit_id: str) -> None:
        suffix = f":{unit_id}"
        for key in [k for k in self._store if k.endswith(suffix)]:
            del self._store[key]
        self._persist()

    def clear_old(self, days_old: int = 30) -> int:
        """Drop entries whose latest iteration is older than ``days_old``."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        stale = [
            key for key, stored in self._store.items()
            if stored.iterations and datetime.fromisoformat(stored.iterations[-1].timestamp) < cutoff
        ]
        for key in stale:
            del self._store[key]
        if stale:
            logger.info(f"Cleared {len(stale)} pipeline memories older than {days_old} days")
            self._persist()
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        timestamps = [
            record.timestamp
            for stored in self._store.values()
            for record in stored.iterations
        ]
        return {
            "total_memories": len(self._store),
            "total_iterations": len(timestamps),
            "total_issues": sum(
                len(record.issues)
                for stored in self._store.values()
                for record in stored.iterations
            ),
            "oldest_memory": min(timestamps) if timestamps else None,
            "newest_memory": max(timestamps) if timestamps else None,
        }

    def export(self) -> Dict[str, Any]:
        return {
            key: {
                "iterations": [
                    {
                        "timestamp": record.timestamp,
                        "issues": [issue.model_dump(mode="json") for issue in record.issues],
                        "summary": record.summary,
                    }
                    for record in stored.iterations
                ],
                "seen_hashes": sorted(stored.seen_hashes),
            }
            for key, stored in self._store.items()
        }

    def load(self) -> None:
        """Load persisted memory; unreadable files are logged and ignored."""
        if self.memory_path is None:
            return
        try:
            data = read_json(self.memory_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load pipeline memory from {self.memory_path}: {e}")
            return
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(f"Ignoring pipeline memory file {self.memory_path}: not a JSON object")
            return

        for key, value in data.items():
            try:
                self._store[key] = StoredMemory(
                    iterations=[
                        IterationRecord(
                            timestamp=record["timestamp"],
                            issues=[Issue(**issue) for issue in record.get("issues", [])],
                            summary=record.get("summary", ""),
                        )
                        for record in value.get("iterations", [])
                    ],
                    seen_hashes=set(value.get("seen_hashes", [])),
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed pipeline memory entry {key}: {e}")

    def _persist(self) -> None:
        if self.memory_path is None:
            return
        try:
            atomic_write_json(self.memory_path, self.export())
        except OSError as e:
            logger.error(f"Failed to persist pipeline memory: {e}")
