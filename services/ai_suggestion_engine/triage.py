"""Triage classifier - labels free-text incident descriptions."""
import logging
import re
from typing import Dict, List, Protocol

from shared.triage_codes import CATEGORY_KEYWORDS, HIGH_SEVERITY_KEYWORDS, TRIAGE_CODES
from shared.types import IncidentCategory, Severity, TriageAnalysis, TriageType

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.95


class TriageClassifier(Protocol):
    def analyze_text(self, text: str) -> TriageAnalysis:
        ...


def _pattern(phrase: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(phrase) + r"\b", re.IGNORECASE)


def _weight(phrase: str) -> int:
    """Multi-word phrases are more specific than single words."""
    return 2 if " " in phrase else 1


class KeywordTriageClassifier:
    """
    Word-boundary keyword matching against the triage tables.

    The triage type with the highest weighted score wins (table order breaks
    ties). Severity is HIGH when the winning type is inherently critical or
    any high-severity cue appears anywhere in the text.
    """

    def __init__(self, codes: List[Dict] = TRIAGE_CODES):
        self._codes = [
            (entry, [(kw, _pattern(kw)) for kw in entry["keywords"]])
            for entry in codes
        ]
        self._severity = [(kw, _pattern(kw)) for kw in HIGH_SEVERITY_KEYWORDS]
        self._categories = {
            category: [_pattern(kw) for kw in keywords]
            for category, keywords in CATEGORY_KEYWORDS.items()
        }

    def analyze_text(self, text: str) -> TriageAnalysis:
        text = text or ""
        best_entry, best_score, best_hits = None, 0, []
        for entry, patterns in self._codes:
            hits = [kw for kw, pattern in patterns if pattern.search(text)]
            score = sum(_weight(kw) for kw in hits)
            if score > best_score:
                best_entry, best_score, best_hits = entry, score, hits

        severity_hits = [kw for kw, pattern in self._severity if pattern.search(text)]

        if best_entry is None:
            category = self._category_from_cues(text)
            triage = TriageType.GENERAL
            high = bool(severity_hits)
        else:
            category = IncidentCategory(best_entry["category"])
            triage = TriageType(best_entry["triage"])
            high = best_entry["high_severity"] or bool(severity_hits)

        keywords = best_hits + [kw for kw in severity_hits if kw not in best_hits]
        analysis = TriageAnalysis(
            category=category,
            severity=Severity.HIGH if high else Severity.LOW,
            triage_type=triage,
            confidence=round(min(MAX_CONFIDENCE, 0.5 + 0.1 * len(keywords)), 2),
            keywords=keywords,
        )
        logger.debug(f"Classified text as {triage.value}/{analysis.severity.value}: {keywords}")
        return analysis

    def _category_from_cues(self, text: str) -> IncidentCategory:
        for category, patterns in self._categories.items():
            if any(p.search(text) for p in patterns):
                return IncidentCategory(category)
        return IncidentCategory.OTHER
