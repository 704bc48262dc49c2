"""
Competitor name normalization.

Sources disagree on name order: some print "Firstname LASTNAME", others
"LASTNAME Firstname". A NameNormalizer turns a raw name into a display form
and a match key; the resolver only ever compares match keys.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod

from shared.models.enums import NameFormat

_WS = re.compile(r"\s+")
_SUFFIX = re.compile(r"\s+(Jr\.?|Sr\.?|II|III|IV|V|VI|VII|VIII|IX|X|XI|XII)(?=\s|$)", re.IGNORECASE)
_PAREN_COUNTRY = re.compile(r"\s*\([A-Z]{3}\)")
_TRAILING_COUNTRY = re.compile(r"\s+[A-Z]{3}$")


def collapse_whitespace(raw: str) -> str:
    return _WS.sub(" ", raw or "").strip()


class NameNormalizer(ABC):
    """Swappable per deployment; see get_normalizer()."""

    @abstractmethod
    def normalize(self, raw: str) -> str:
        """Display form of a raw name."""

    def match_key(self, raw: str) -> str:
        return self.normalize(raw).casefold()

    def same_person(self, a: str, b: str) -> bool:
        key = self.match_key(a)
        return bool(key) and key == self.match_key(b)


class PlainNameNormalizer(NameNormalizer):
    def normalize(self, raw: str) -> str:
        return collapse_whitespace(raw)


class SurnameFirstNormalizer(NameNormalizer):
    """
    Reorders "LASTNAME Given" to "Given LASTNAME".

    The surname is the first word when it is mixed-case (e.g. "AlQAHTANI"),
    otherwise the run of leading all-caps words longer than one character.
    Generational suffixes are kept and moved to the end.
    """

    def normalize(self, raw: str) -> str:
        name = collapse_whitespace(raw)
        if not name:
            return ""

        suffix = None
        m = _SUFFIX.search(name)
        if m:
            suffix = m.group(1).rstrip(".")
            name = collapse_whitespace(name[: m.start()] + " " + name[m.end() :])

        name = _PAREN_COUNTRY.sub("", name)
        parts = name.split(" ")
        if len(parts) > 2 and _TRAILING_COUNTRY.search(name):
            parts = parts[:-1]

        if len(parts) > 1:
            first = parts[0]
            if any(c.isupper() for c in first) and any(c.islower() for c in first):
                surname_end = 1
            else:
                surname_end = 0
                for word in parts:
                    if word.isupper() and len(word) > 1:
                        surname_end += 1
                    else:
                        break
            if 0 < surname_end < len(parts):
                parts = parts[surname_end:] + parts[:surname_end]

        result = " ".join(parts)
        return f"{result} {suffix}" if suffix else result

    def match_key(self, raw: str) -> str:
        # Local rows are already reordered, remote rows are not: compare token sets.
        return " ".join(sorted(self.normalize(raw).casefold().split(" ")))


def get_normalizer(name_format: NameFormat) -> NameNormalizer:
    if name_format == NameFormat.SURNAME_FIRST:
        return SurnameFirstNormalizer()
    return PlainNameNormalizer()
