"""
extractor.py — Labelled-field scanner for profile submissions.

Users answer the welcome template with up to five circled-number markers:

    ①田中花子
    ②1990/01/01
    ③14:30
    ④INFP
    ⑤女性

Each value runs from its marker to the next marker (or end of text). Values
are trimmed, and a label the user copied from the template ("①お名前：...")
is stripped together with a half-width or full-width colon.

This is a best-effort scanner: it never raises, and absent markers yield None.
"""
from __future__ import annotations

import re
from datetime import date

from fortunebot.conversation.schemas import ExtractedFields

# ---------------------------------------------------------------------------
# Markers and echoed labels
# ---------------------------------------------------------------------------

FIELD_MARKERS: dict[str, str] = {
    "name": "①",
    "birthdate": "②",
    "birthtime": "③",
    "mbti": "④",
    "gender": "⑤",
}

# Longest first so "生まれた時間" wins over "時間"
FIELD_LABELS: dict[str, tuple[str, ...]] = {
    "name": ("ニックネーム", "お名前", "名前", "氏名"),
    "birthdate": ("生年月日", "誕生日"),
    "birthtime": ("生まれた時間", "生まれた時刻", "出生時間", "出生時刻", "時間"),
    "mbti": ("MBTIタイプ", "性格タイプ", "MBTI"),
    "gender": ("性別",),
}

REQUIRED_FIELDS: tuple[str, ...] = ("name", "birthdate", "gender")

_SEPARATOR = re.compile(r"^\s*[:：]\s*")
_LABEL_HINT = re.compile(r"^\s*[（(][^）)]*[）)]")
_FULLWIDTH_DIGITS = str.maketrans("０１２３４５６７８９／－．", "0123456789/-.")
_BIRTHDATE_PATTERNS = (
    re.compile(r"^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})$"),
    re.compile(r"^(\d{4})年(\d{1,2})月(\d{1,2})日?$"),
)


def has_any_marker(text: str) -> bool:
    """True if the message uses the labelled format at all (at least one marker)."""
    if not text:
        return False
    return any(marker in text for marker in FIELD_MARKERS.values())


def _strip_label(field: str, value: str) -> str:
    value = _SEPARATOR.sub("", value)
    for label in FIELD_LABELS[field]:
        if value.upper().startswith(label.upper()):
            value = value[len(label):]
            value = _LABEL_HINT.sub("", value)
            break
    value = _SEPARATOR.sub("", value)
    return value.strip()


def extract_fields(text: str) -> ExtractedFields:
    """
    Scan `text` for the five labelled segments.

    The first occurrence of each marker is used. A marker followed by nothing
    (or only an echoed label) yields None for that field.
    """
    if not text:
        return ExtractedFields()

    positions: list[tuple[int, str]] = []
    for field, marker in FIELD_MARKERS.items():
        idx = text.find(marker)
        if idx != -1:
            positions.append((idx, field))
    positions.sort()

    values: dict[str, str | None] = {}
    for i, (start, field) in enumerate(positions):
        end = positions[i + 1][0] if i + 1 < len(positions) else len(text)
        raw = text[start + len(FIELD_MARKERS[field]):end]
        # Drop any later occurrence of another marker inside the segment
        for other in FIELD_MARKERS.values():
            cut = raw.find(other)
            if cut != -1:
                raw = raw[:cut]
        value = _strip_label(field, raw.strip())
        values[field] = value or None

    return ExtractedFields(**values)


def parse_birthdate(value: str) -> date | None:
    """Parse YYYY/MM/DD, YYYY-MM-DD, YYYY.MM.DD or YYYY年M月D日. None if not a real date."""
    cleaned = value.strip().translate(_FULLWIDTH_DIGITS)
    for pattern in _BIRTHDATE_PATTERNS:
        match = pattern.match(cleaned)
        if match:
            year, month, day = (int(g) for g in match.groups())
            try:
                return date(year, month, day)
            except ValueError:
                return None
    return None


def find_problems(fields: ExtractedFields) -> list[str]:
    """
    Return the field keys that block a profile reading: required fields that are
    missing, plus a birthdate that is present but not a valid date.
    """
    problems = [key for key in REQUIRED_FIELDS if not getattr(fields, key)]
    if fields.birthdate and parse_birthdate(fields.birthdate) is None:
        problems.append("birthdate_format")
    return problems
