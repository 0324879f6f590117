"""
Pronunciation normalization for speech synthesis.

The replacement tables live in pronunciation.yaml next to this module.
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml


@dataclass(frozen=True)
class Replacement:
    pattern: re.Pattern
    replacement: str
    literal: bool = False

    def apply(self, text: str) -> str:
        if self.literal:
            return self.pattern.sub(lambda _m: self.replacement, text)
        return self.pattern.sub(self.replacement, text)


def _term_pattern(term: str, ignore_case: bool) -> re.Pattern:
    prefix = r"(?<!\w)" if re.match(r"\w", term[0]) else ""
    suffix = r"(?!\w)" if re.match(r"\w", term[-1]) else ""
    return re.compile(prefix + re.escape(term) + suffix, re.IGNORECASE if ignore_case else 0)


class PronunciationTable:
    """Term replacements (longest first) followed by ordered regex rules."""

    def __init__(self, replacements: List[Replacement]):
        self._replacements = replacements

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PronunciationTable":
        terms = [(term, say, True) for term, say in (data.get("terms") or {}).items()]
        terms += [(term, say, False) for term, say in (data.get("case_sensitive_terms") or {}).items()]
        terms.sort(key=lambda entry: len(entry[0]), reverse=True)

        replacements = [
            Replacement(_term_pattern(term, ignore_case), str(say), literal=True)
            for term, say, ignore_case in terms
            if term
        ]
        for rule in data.get("rules") or []:
            flags = re.IGNORECASE if rule.get("ignore_case") else 0
            replacements.append(Replacement(re.compile(rule["pattern"], flags), str(rule["replacement"])))
        return cls(replacements)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "PronunciationTable":
        path = path or Path(__file__).with_suffix(".yaml")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Pronunciation file {path} must contain a mapping at top-level")
        return cls.from_mapping(data)

    def apply(self, text: str) -> str:
        for replacement in self._replacements:
            text = replacement.apply(text)
        return text

    def __len__(self) -> int:
        return len(self._replacements)


@lru_cache(maxsize=1)
def default_table() -> PronunciationTable:
    return PronunciationTable.load()


def normalize_pronunciation(text: str, table: Optional[PronunciationTable] = None) -> str:
    if not text:
        return text
    return (table or default_table()).apply(text)
