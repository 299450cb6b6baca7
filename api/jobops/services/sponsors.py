from __future__ import annotations

import csv
from functools import lru_cache
import logging
from pathlib import Path
import re

from jobops.core.config import get_settings

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_LEGAL_SUFFIXES = {"ltd", "limited", "plc", "llp", "llc", "inc", "uk", "group", "co"}


def normalize_company_name(name: str) -> str:
    tokens = _NON_ALNUM_RE.sub(" ", name.lower()).split()
    while tokens and tokens[-1] in _LEGAL_SUFFIXES:
        tokens.pop()
    return " ".join(tokens)


class SponsorRegister:
    """Licensed visa sponsors keyed by normalized organisation name."""

    def __init__(self, names: set[str] | None = None) -> None:
        self._names = {normalize_company_name(name) for name in names or set() if name.strip()}
        self._names.discard("")

    @property
    def loaded(self) -> bool:
        return bool(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def lookup(self, company: str) -> bool | None:
        """True/False once cross-referenced; None when no register is loaded."""
        if not self.loaded:
            return None
        return normalize_company_name(company) in self._names

    @classmethod
    def from_csv(cls, path: str | Path, *, column: str = "Organisation Name") -> SponsorRegister:
        names: set[str] = set()
        with open(path, newline="", encoding="utf-8-sig") as handle:
            for row in csv.DictReader(handle):
                value = row.get(column)
                if value:
                    names.add(value)
        logger.info("loaded sponsor register path=%s organisations=%s", path, len(names))
        return cls(names)


@lru_cache
def get_sponsor_register() -> SponsorRegister:
    path = get_settings().sponsor_register_path
    if not path:
        return SponsorRegister()
    try:
        return SponsorRegister.from_csv(path)
    except OSError:
        logger.exception("sponsor register unreadable path=%s; visa sponsor flags disabled", path)
        return SponsorRegister()
