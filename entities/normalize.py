from __future__ import annotations

import re
import unicodedata

LEGAL_SUFFIXES = ("L.L.C", "CORPORATION", "PLLC", "CORP", "INC", "LLC", "LTD", "CO")

_SUFFIX_RE = re.compile(r"\b(?:" + "|".join(re.escape(s.replace(".", "")) for s in LEGAL_SUFFIXES) + r")\b")


def normalize_name(name: str, strip_legal_suffixes: bool = False) -> str:
    """
    Collation key for company names: upper-case, punctuation dropped, whitespace collapsed.

    "Acme LLC" and "ACME llc." both normalise to "ACME LLC" (or "ACME" with suffix stripping).
    """
    s = unicodedata.normalize("NFKC", name or "").upper()
    # "A.C.M.E." -> "ACME", "Smith-Jones" -> "SMITH JONES"
    s = re.sub(r"[.'`’]", "", s)
    s = re.sub(r"[^\w\s]|_", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    if strip_legal_suffixes:
        s = re.sub(r"\s+", " ", _SUFFIX_RE.sub("", s)).strip()
    return s


def normalize_identifier(identifier: str | None) -> str | None:
    """Tax ids are compared on their digits only ("12-3456789" == "123456789")."""
    if identifier is None:
        return None
    digits = re.sub(r"[^0-9A-Za-z]", "", identifier).upper()
    return digits or None
