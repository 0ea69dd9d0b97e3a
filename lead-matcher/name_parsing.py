"""
Input parsing for lead resolution.
Turns pasted name blobs into searchable name queries and structured customer
records into typed, deduplicated search candidates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


ENTRY_SPLIT_RE = re.compile(r"[\t\n\r]+| {2,}")
SUB_ENTRY_SPLIT_RE = re.compile(r"/| - | -|-")
LIST_SPLIT_RE = re.compile(r"[,;]+")
WHITESPACE_RE = re.compile(r"\s+")
LEADING_ZEROS_RE = re.compile(r"^\+?0+(?=\d)")

NULL_TOKEN = "null"
DASH_D_SUFFIX = "-D"
MIN_NAME_WORDS = 2

RECORD_FIELDS = (
    "first_name",
    "last_name",
    "personal_address",
    "personal_city",
    "personal_state",
    "personal_zip",
    "mobile_phone",
    "personal_phone",
    "business_email",
    "personal_emails",
    "deep_verified_emails",
)
EMAIL_FIELDS = ("business_email", "personal_emails", "deep_verified_emails")
PHONE_FIELDS = ("mobile_phone", "personal_phone")

CATEGORY_NAME = "name"
CATEGORY_ADDRESS = "address"
CATEGORY_EMAIL = "email"
CATEGORY_PHONE = "phone"


@dataclass(frozen=True)
class SearchCandidate:
    """A typed search term. Two candidates are equal when category and term match."""

    category: str
    key: str = field(compare=False)
    term: str

    def to_dict(self) -> dict:
        return {"category": self.category, "key": self.key, "term": self.term}


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def keep_maximal_entries(entries: list[str]) -> list[str]:
    """Drop every entry contained in another, distinct entry."""
    unique_entries = _unique(entries)
    return [
        entry
        for entry in unique_entries
        if not any(other != entry and entry in other for other in unique_entries)
    ]


def _strip_dash_d(name: str) -> str:
    if name.endswith(DASH_D_SUFFIX):
        return name[: -len(DASH_D_SUFFIX)].strip()
    return name


def segment_names(raw: Optional[str], split_sub_entries: bool = False) -> list[str]:
    """
    Split a pasted block of names into discrete name queries.

    Entries are separated by tabs, newlines, or runs of two or more spaces.
    With ``split_sub_entries`` each entry is further split on ``/`` and dashes,
    a trailing ``-D`` marker is removed and single-word fragments are dropped.
    Only maximal entries survive: a name contained in a longer one is discarded.
    """
    entries = [part.strip() for part in ENTRY_SPLIT_RE.split(str(raw or ""))]
    entries = [entry for entry in entries if entry]

    if split_sub_entries:
        fragments: list[str] = []
        for entry in entries:
            for piece in SUB_ENTRY_SPLIT_RE.split(entry):
                name = _strip_dash_d(piece.strip())
                if len(name.split()) >= MIN_NAME_WORDS:
                    fragments.append(name)
        entries = fragments

    return keep_maximal_entries(entries)


def clean_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == NULL_TOKEN:
        return None
    return text


def sanitize_record(record: Mapping[str, Any]) -> dict[str, Optional[str]]:
    """Project an incoming record onto the known fields; blanks and "null" become None."""
    return {name: clean_value(record.get(name)) for name in RECORD_FIELDS}


def split_list(value: Optional[str]) -> list[str]:
    if not value:
        return []
    parts = [part.strip() for part in LIST_SPLIT_RE.split(value)]
    return [part for part in parts if part and part.lower() != NULL_TOKEN]


def normalize_phone(raw: str) -> str:
    """Keep digits and a single leading '+', then drop leading zeros."""
    text = str(raw or "").strip()
    plus = "+" if text.startswith("+") else ""
    digits = re.sub(r"\D+", "", text)
    if not digits:
        return ""
    return LEADING_ZEROS_RE.sub(plus, plus + digits)


def normalize_term(category: str, term: Optional[str]) -> Optional[str]:
    text = clean_value(term)
    if text is None:
        return None
    if category == CATEGORY_EMAIL:
        return text.lower()
    if category == CATEGORY_PHONE:
        return normalize_phone(text) or None
    return WHITESPACE_RE.sub(" ", text).strip() or None


def _field_index(data: Mapping[str, Optional[str]], fields: tuple[str, ...], normalizer) -> dict[str, set[str]]:
    # Each source field is split and normalized once per record.
    return {
        name: {normalizer(item) for item in split_list(data.get(name))}
        for name in fields
    }


def _provenance_key(value: str, index: dict[str, set[str]], fallback: str) -> str:
    sources = [name for name, values in index.items() if value in values]
    return "|".join(sources) or fallback


def dedupe_candidates(candidates: list[SearchCandidate]) -> list[SearchCandidate]:
    return list(dict.fromkeys(candidates))


def build_candidates(data: Mapping[str, Optional[str]]) -> list[SearchCandidate]:
    """
    Derive search candidates from a sanitized record.

    Produces at most one name candidate ("first last"), at most one address
    candidate ("address city"), and one candidate per distinct email and phone
    number. Email and phone candidates record which source fields carried them.
    """
    out: list[SearchCandidate] = []

    def push(category: str, key: str, term: Optional[str]) -> None:
        normalized = normalize_term(category, term)
        if normalized:
            out.append(SearchCandidate(category=category, key=key, term=normalized))

    first_name = data.get("first_name")
    last_name = data.get("last_name")
    if first_name and last_name:
        push(CATEGORY_NAME, "first_name+last_name", f"{first_name} {last_name}")

    address = data.get("personal_address")
    city = data.get("personal_city")
    if address and city:
        push(CATEGORY_ADDRESS, "personal_address+personal_city", f"{address} {city}")

    email_index = _field_index(data, EMAIL_FIELDS, str.lower)
    email_values: list[str] = []
    for name in EMAIL_FIELDS:
        email_values.extend(split_list(data.get(name)))
    for email in _unique([value.lower() for value in email_values]):
        push(CATEGORY_EMAIL, _provenance_key(email, email_index, CATEGORY_EMAIL), email)

    phone_index = _field_index(data, PHONE_FIELDS, normalize_phone)
    phone_values: list[str] = []
    for name in PHONE_FIELDS:
        phone_values.extend(split_list(data.get(name)))
    for phone in _unique([normalize_phone(value) for value in phone_values]):
        if phone:
            push(CATEGORY_PHONE, _provenance_key(phone, phone_index, CATEGORY_PHONE), phone)

    return dedupe_candidates(out)
