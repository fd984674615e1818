"""
Group-list cell parsing.

A single cell packs several group memberships, e.g.
"RIT 2 VS RV1, RIT 2 VS RV2; RIT 2 VS RV3". Entries are split on the usual
delimiters and each entry is split once more on the VS token into
(cohort label, sub-group label).
"""

import re
from typing import Iterable, Iterator, Optional

from scraper.models import SessionType

SPLIT_RE = re.compile(r'\s*[,;|/]\s*')
VS_RE = re.compile(r'\s*\bVS\b\s*')
WHITESPACE_RE = re.compile(r'\s+')
TRIM_CHARS = '"\'“”’.,; '

# Lectures and seminars are scheduled per cohort, the rest per sub-group
COHORT_SCHEDULED_TYPES = (SessionType.LECTURE, SessionType.SEMINAR_EXERCISE)


def normalize_spaces(value: str) -> str:
    return WHITESPACE_RE.sub(" ", (value or "").replace(" ", " ").strip())


def split_groups(value: Optional[str]) -> Iterator[str]:
    """Yield the individual entries of a group-list cell, cleaned up."""
    if not value or not value.strip():
        return
    for raw in SPLIT_RE.split(normalize_spaces(value)):
        token = normalize_spaces(raw.strip(TRIM_CHARS))
        if token:
            yield token


def split_vs(entry: str) -> tuple[str, str]:
    """Split "<label> VS <sub-label>" into its two halves (sub-label may be "")."""
    parts = VS_RE.split(entry, maxsplit=1)
    label = parts[0].strip()
    sub_label = parts[1].strip() if len(parts) > 1 else ""
    return label, sub_label


def groups_for_target(value: Optional[str], target_label: str, session_type: SessionType) -> list[str]:
    """Return the group names a row contributes for one target label.

    Entries whose label does not equal target_label are dropped. Cohort
    scheduled types keep the label itself, the others keep the sub-label
    (falling back to the label when the entry has no VS part). Duplicates
    are removed, case-insensitively, keeping the first spelling.
    """
    wanted = normalize_spaces(target_label)
    names = []
    for entry in split_groups(value):
        label, sub_label = split_vs(entry)
        if label != wanted:
            continue
        if session_type in COHORT_SCHEDULED_TYPES:
            names.append(label)
        else:
            names.append(sub_label or label)
    return list(dedupe(names))


def dedupe(names: Iterable[str]) -> Iterator[str]:
    seen = set()
    for name in names:
        key = name.casefold()
        if key not in seen:
            seen.add(key)
            yield name
