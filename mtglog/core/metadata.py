"""Meeting metadata extraction from Slack message text.

WHY: Consultants type meeting details (company, consultant, date, ...)
into the Slack message that carries the video. Each field used to be
pulled out with its own inline regex; a declarative table keeps the
labels, the pattern shape and the clean-up in one place, so adding a
field or a label is a one-line change.

HOW: FIELD_RULES lists one FieldRule per task column. Each rule builds a
line-anchored pattern from its labels ("企業名：X", "company name: X",
"- *Company*: X") and runs its post-processor on the captured value.
resolve_metadata() merges explicit payload keys (snake_case or the
camelCase names Slack workflows send) over text-extracted values.

RULES:
- No match => None, never an empty string
- Labels match case-insensitively at the start of a line, followed by
  ':' or '：'
- meeting_count is an int (full-width digits accepted); unparseable => None
- meeting_date is normalized to YYYY-MM-DD when it parses, else kept as typed
- Explicit payload values win over text extraction
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

# ---------------------------------------------------------------------------
# Post-processors
# ---------------------------------------------------------------------------


def clean_text(value: str) -> Optional[str]:
    value = value.strip().strip("*_`").strip()
    return value or None


def parse_count(value: str) -> Optional[int]:
    match = re.search(r"\d+", unicodedata.normalize("NFKC", value))
    return int(match.group()) if match else None


_DATE_PATTERN = re.compile(
    r"(?P<y>\d{4})\s*[-/.年]\s*(?P<m>\d{1,2})\s*[-/.月]\s*(?P<d>\d{1,2})"
)


def parse_date(value: str) -> Optional[str]:
    text = clean_text(unicodedata.normalize("NFKC", value))
    if text is None:
        return None
    match = _DATE_PATTERN.search(text)
    if not match:
        return text
    year, month, day = int(match["y"]), int(match["m"]), int(match["d"])
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return text
    return f"{year:04d}-{month:02d}-{day:02d}"


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldRule:
    """How one metadata field is recognized and cleaned.

    RULES:
    - name is the task column the value is stored in
    - labels are literal label strings (escaped when compiled)
    - aliases are extra payload keys accepted for the field
    """

    name: str
    labels: Sequence[str]
    post: Callable[[str], Any] = clean_text
    aliases: Sequence[str] = field(default_factory=tuple)

    @property
    def pattern(self) -> re.Pattern:
        labels = "|".join(re.escape(label) for label in self.labels)
        return re.compile(
            r"^[ \t\-•・*>]*(?:" + labels + r")[*_]*[ \t]*[:：][ \t]*(?P<value>.+?)[ \t]*$",
            re.IGNORECASE | re.MULTILINE,
        )

    def extract(self, text: str) -> Any:
        match = self.pattern.search(text)
        if not match:
            return None
        return self.post(match.group("value"))


FIELD_RULES: tuple = (
    FieldRule(
        "consultant_name",
        ("consultant name", "consultant", "コンサルタント名", "コンサルタント", "担当者"),
        aliases=("consultantName",),
    ),
    FieldRule(
        "company_name",
        ("company name", "company", "企業名", "会社名"),
        aliases=("companyName",),
    ),
    FieldRule(
        "company_type",
        ("company type", "企業タイプ", "企業区分"),
        aliases=("companyType",),
    ),
    FieldRule(
        "company_problem",
        ("company problem", "company issues", "issues", "企業の課題", "課題"),
        aliases=("companyIssues", "companyProblem"),
    ),
    FieldRule(
        "company_phase",
        ("company phase", "phase", "企業のフェーズ", "フェーズ"),
        aliases=("companyPhase",),
    ),
    FieldRule(
        "meeting_date",
        ("meeting date", "date", "面談日", "日付"),
        post=parse_date,
        aliases=("meetingDate",),
    ),
    FieldRule(
        "meeting_count",
        ("meeting count", "面談回数", "回数"),
        post=parse_count,
        aliases=("meetingCount",),
    ),
    FieldRule(
        "meeting_type",
        ("meeting type", "面談種別", "面談タイプ"),
        aliases=("meetingType",),
    ),
    FieldRule(
        "support_area",
        ("support area", "支援領域"),
        aliases=("supportArea",),
    ),
    FieldRule(
        "internal_sharing_items",
        ("internal sharing items", "internal sharing", "社内共有が必要な事項", "社内共有"),
        aliases=("internalSharingItems",),
    ),
)

METADATA_FIELDS: tuple = tuple(rule.name for rule in FIELD_RULES)


def extract_metadata(text: Optional[str]) -> Dict[str, Any]:
    """Apply every rule to a message body; fields without a match are None."""
    if not text:
        return {rule.name: None for rule in FIELD_RULES}
    return {rule.name: rule.extract(text) for rule in FIELD_RULES}


def _explicit_value(rule: FieldRule, explicit: Mapping[str, Any]) -> Any:
    for key in (rule.name, *rule.aliases):
        if key not in explicit:
            continue
        value = explicit[key]
        if value is None:
            continue
        if isinstance(value, str):
            value = rule.post(value)
        elif rule.post is parse_count and not isinstance(value, int):
            value = parse_count(str(value))
        if value is not None:
            return value
    return None


def resolve_metadata(
    explicit: Optional[Mapping[str, Any]] = None,
    text: Optional[str] = None,
) -> Dict[str, Any]:
    """Merge explicit payload metadata over values extracted from text.

    WHY: Slack workflow forms send structured fields, plain messages only
    carry free text. Both end up in the same task columns.

    RULES:
    - Returns every field in METADATA_FIELDS (missing => None)
    - Explicit non-empty values win; empty strings count as missing
    """
    explicit = explicit or {}
    extracted = extract_metadata(text)
    resolved: Dict[str, Any] = {}
    for rule in FIELD_RULES:
        value = _explicit_value(rule, explicit)
        resolved[rule.name] = value if value is not None else extracted[rule.name]
    return resolved
