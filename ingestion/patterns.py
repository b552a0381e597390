"""Rule tables for section, step, procedure and reference detection.

Each table is evaluated in order. Section headers use first-match-wins per
line; the cue tables only answer "does any rule match".
"""
import re
from typing import List, Tuple

from ingestion.models import SectionType

# (section type, header pattern). Group 1 is the number, group 2 the title.
SECTION_PATTERNS: List[Tuple[SectionType, re.Pattern]] = [
    (SectionType.HIERARCHICAL, re.compile(r'^(\d+(?:\.\d+){0,5})\s+(.+)', re.M)),
    (SectionType.CHAPTER, re.compile(r'^(?:chapter|ch\.?)\s+(\d+)[\s:]+(.+)', re.I | re.M)),
    (SectionType.APPENDIX, re.compile(r'^(?:appendix|app\.?)\s+([a-z])\s+(.+)', re.I | re.M)),
    (SectionType.LETTER, re.compile(r'^([a-z])\.\s+(.+)', re.I | re.M)),
    (SectionType.ROMAN, re.compile(r'^([ivx]+)\.\s+(.+)', re.I | re.M)),
    (SectionType.STEP, re.compile(r'^step\s+(\d+)[\s:]+(.+)', re.I | re.M)),
]

PROCEDURE_PATTERNS = [
    re.compile(r'procedure\s*:', re.I),
    re.compile(r'steps?\s*:', re.I),
    re.compile(r'instructions?\s*:', re.I),
    re.compile(r'to\s+(perform|complete|execute)', re.I),
]

STEP_PATTERNS = [
    re.compile(r'(?:^|\n)\s*(?:\d+[.)]\s+|step\s+\d+|[a-z][.)]\s+)', re.I),
    re.compile(r'(?:first|second|third|next|then|finally)', re.I),
    re.compile(r'(?:^|\n)\s*[-*•]\s+'),
]

DEFINITION_PATTERNS = [
    re.compile(r'is\s+defined\s+as', re.I),
    re.compile(r'means\s+', re.I),
    re.compile(r'refers\s+to', re.I),
    re.compile(r':\s*the\s+', re.I),
    re.compile(r'definition\s*:', re.I),
]

CROSS_REFERENCE_PATTERNS = [
    re.compile(r'(?:see|refer to|reference|chapter|section|appendix|paragraph)\s+(\d+(?:\.\d+)*)', re.I),
    re.compile(r'\((?:ref|see)\s+([^)]+)\)', re.I),
    re.compile(r'(?:page|p\.)\s+(\d+)', re.I),
]

COMPLETION_PATTERN = re.compile(r'(?:complete|finished|done|end)', re.I)


def match_section_header(line: str) -> Tuple[SectionType, str, str] | None:
    """Match one line against the section table, first match wins.

    Returns:
        (type, number, title) or None
    """
    line = line.strip()
    if not line:
        return None
    for section_type, pattern in SECTION_PATTERNS:
        match = pattern.match(line)
        if match:
            return section_type, match.group(1), match.group(2).strip()
    return None


def dedupe(items: List[str]) -> List[str]:
    """Drop duplicates, keeping first-seen order."""
    return list(dict.fromkeys(items))


def contains_procedure(text: str) -> bool:
    return any(p.search(text) for p in PROCEDURE_PATTERNS)


def contains_steps(text: str) -> bool:
    return any(p.search(text) for p in STEP_PATTERNS)


def contains_definition(text: str) -> bool:
    return any(p.search(text) for p in DEFINITION_PATTERNS)


def extract_cross_references(text: str) -> List[str]:
    references = []
    for pattern in CROSS_REFERENCE_PATTERNS:
        for match in pattern.finditer(text):
            if match.group(1):
                references.append(match.group(1).strip())
    return dedupe(references)


def extract_section_numbers(text: str) -> List[str]:
    numbers = []
    for _, pattern in SECTION_PATTERNS:
        for match in pattern.finditer(text):
            numbers.append(match.group(1))
    return dedupe(numbers)


def is_complete_procedure(text: str) -> bool:
    """Conservative check that a chunk holds a whole procedure.

    Needs a procedure cue, a step marker, and either a completion cue or
    more than five lines.
    """
    if not (contains_procedure(text) and contains_steps(text)):
        return False
    return bool(COMPLETION_PATTERN.search(text)) or len(text.split('\n')) > 5
