"""Stable issue identity for cross-iteration deduplication.

The identifier is a rolling 31-multiplier hash over
``summary|file|line|category`` (lower-cased, summary trimmed), accumulated in
signed 32-bit arithmetic over UTF-16 code units and rendered as the hex of its
absolute value. Not collision resistant; only stable.
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set

from .models import Issue, Severity

SEPARATOR = "|"
DEFAULT_SUMMARY_KEYS = ("description", "title")


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def rolling_hash(text: str) -> str:
    h = 0
    encoded = text.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        h = _to_int32((h << 5) - h + code_unit)
    return format(abs(h), "x")


def _line_text(line: Any) -> str:
    if not line:
        return "0"
    if isinstance(line, float) and line.is_integer():
        return str(int(line))
    return str(line)


def normalize_fields(
    summary: Optional[str],
    file: Optional[str] = None,
    line: Any = None,
    category: Optional[str] = None,
) -> str:
    return SEPARATOR.join([
        str(summary or "").lower().strip(),
        str(file or "").lower(),
        _line_text(line),
        str(category or "").lower(),
    ])


def hash_issue(
    summary: Optional[str],
    file: Optional[str] = None,
    line: Any = None,
    category: Optional[str] = None,
) -> str:
    """Pure function of the four normalized fields."""
    return rolling_hash(normalize_fields(summary, file, line, category))


def first_present(raw: Mapping[str, Any], keys: Sequence[str], default: str = "") -> str:
    for key in keys:
        value = raw.get(key)
        if value:
            return str(value)
    return default


def hash_finding(raw: Mapping[str, Any], summary_keys: Sequence[str] = DEFAULT_SUMMARY_KEYS) -> str:
    return hash_issue(
        first_present(raw, summary_keys),
        raw.get("file"),
        raw.get("line"),
        raw.get("category"),
    )


def normalize_severity(value: Any) -> Severity:
    """{critical, high} -> high, medium -> medium, anything else -> low."""
    lowered = str(value or "").strip().lower()
    if lowered in ("critical", "high"):
        return Severity.HIGH
    if lowered == "medium":
        return Severity.MEDIUM
    return Severity.LOW


def finding_to_issue(
    raw: Mapping[str, Any],
    summary_keys: Sequence[str] = DEFAULT_SUMMARY_KEYS,
    severity_keys: Sequence[str] = ("severity",),
) -> Issue:
    location = None
    if raw.get("file"):
        location = f"{raw['file']}:{_line_text(raw.get('line'))}"
    return Issue(
        hash=hash_finding(raw, summary_keys),
        summary=first_present(raw, summary_keys),
        location=location,
        severity=normalize_severity(first_present(raw, severity_keys, "medium")),
    )


def findings_to_issues(
    findings: Iterable[Any],
    summary_keys: Sequence[str] = DEFAULT_SUMMARY_KEYS,
    severity_keys: Sequence[str] = ("severity",),
) -> List[Issue]:
    return [
        finding_to_issue(raw, summary_keys, severity_keys)
        for raw in findings
        if isinstance(raw, Mapping)
    ]


def new_issues(issues: Iterable[Issue], seen_hashes: Iterable[str]) -> List[Issue]:
    """Issues whose hash is not among ``seen_hashes``, order preserved."""
    seen: Set[str] = set(seen_hashes)
    return [issue for issue in issues if issue.hash not in seen]
