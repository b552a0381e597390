"""
Query classification.

Questions are sorted into response archetypes by ordered regex families.
The archetype picks the prompt template and decoding parameters.
"""

import re
from typing import List, Tuple

from retrieval.models import QueryClassification, QueryType

# Ordered: on equal match counts the earlier family wins
QUERY_PATTERNS: List[Tuple[QueryType, List[re.Pattern]]] = [
    (QueryType.PROCEDURAL, [
        re.compile(r'how\s+to\s+'),
        re.compile(r'steps?\s+(to|for)'),
        re.compile(r'procedure\s+(for|to)'),
        re.compile(r'process\s+(for|to)'),
        re.compile(r'instructions?\s+(for|to)'),
        re.compile(r'\b(submit|complete|perform|execute|conduct)\b'),
    ]),
    (QueryType.DEFINITIONAL, [
        re.compile(r'what\s+is\s+'),
        re.compile(r'define\s+'),
        re.compile(r'definition\s+of'),
        re.compile(r'meaning\s+of'),
        re.compile(r'\b(explain|describe)\b'),
    ]),
    (QueryType.ANALYTICAL, [
        re.compile(r'analyze\s+'),
        re.compile(r'compare\s+'),
        re.compile(r'relationship\s+between'),
        re.compile(r'structure\s+of'),
        re.compile(r'organization\s+of'),
    ]),
]

GENERAL_CONFIDENCE = 0.5


class QueryClassifier:
    """Deterministic rule-based query classifier."""

    def classify(self, query: str) -> QueryClassification:
        """Classify a question.

        Args:
            query: User question

        Returns:
            QueryClassification; `general` at 0.5 when nothing matches
        """
        lowered = query.lower()
        best_type = None
        best_matches: List[str] = []

        for query_type, patterns in QUERY_PATTERNS:
            matches = [p.pattern for p in patterns if p.search(lowered)]
            if len(matches) > len(best_matches):
                best_type, best_matches = query_type, matches

        if best_type is None:
            return QueryClassification(type=QueryType.GENERAL, confidence=GENERAL_CONFIDENCE)

        return QueryClassification(
            type=best_type,
            confidence=round(min(0.95, 0.6 + 0.1 * len(best_matches)), 2),
            matched_patterns=best_matches
        )
