"""
Maps raw pipeline-stage display names onto the internal funnel vocabulary.

Labels drift in casing, emoji and diacritics between CRM accounts, so both
the table keys and the incoming labels go through the same normalization.
Unknown labels pass through unchanged.
"""
from __future__ import annotations

import re
import unicodedata
from types import MappingProxyType
from typing import Iterable, Mapping

# German transliteration first; remaining accents are stripped afterwards
_DIACRITICS: dict[str, str] = {
    "ä": "ae",
    "ö": "oe",
    "ü": "ue",
    "ß": "ss",
    "é": "e",
    "è": "e",
    "ê": "e",
    "á": "a",
    "à": "a",
    "â": "a",
    "ó": "o",
    "ò": "o",
    "ô": "o",
    "í": "i",
    "ì": "i",
    "ú": "u",
    "ù": "u",
    "ç": "c",
    "ñ": "n",
}

_DISALLOWED_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_stage_label(raw: str) -> str:
    """Lower-case, fold diacritics, drop symbols/emoji, collapse whitespace."""
    text = (raw or "").lower()
    text = "".join(_DIACRITICS.get(ch, ch) for ch in text)
    # Strip any combining marks the table above does not cover
    text = "".join(
        ch for ch in unicodedata.normalize("NFKD", text)
        if not unicodedata.combining(ch)
    )
    text = _DISALLOWED_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


class StageMapper:
    """Total function from display label to internal stage (or the raw label)."""

    def __init__(self, labels: Iterable[tuple[str, str]]):
        table = {normalize_stage_label(label): stage for label, stage in labels}
        self._table: Mapping[str, str] = MappingProxyType(table)

    @property
    def table(self) -> Mapping[str, str]:
        return self._table

    def lookup(self, raw: str) -> str | None:
        return self._table.get(normalize_stage_label(raw))

    def map(self, raw: str | None) -> str:
        if raw is None:
            return ""
        mapped = self.lookup(raw)
        return mapped if mapped is not None else raw
