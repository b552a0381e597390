"""Text cleaning utilities."""
import re
from collections import Counter
from typing import List

PAGE_NUMBER_LINE = re.compile(r'^(?:page\s+)?\d+(?:\s+of\s+\d+)?$', re.I)


def clean_text(text: str) -> str:
    """Clean extracted text by normalizing whitespace and fixing common issues.

    Line structure is kept, since section headers are detected per line.

    Args:
        text: Raw text from one PDF page

    Returns:
        Cleaned text
    """
    # Collapse runs of blank lines to a single paragraph break
    text = re.sub(r'\n\s*\n\s*\n+', '\n\n', text)

    # Fix hyphenated line breaks (words split across lines)
    text = re.sub(r'(\w+)-\s*\n\s*(\w+)', r'\1\2', text)

    # Normalize whitespace within lines
    text = re.sub(r'[ \t]+', ' ', text)

    lines = [line.strip() for line in text.split('\n')]
    return '\n'.join(lines).strip()


def remove_running_headers(pages: List[str], min_share: float = 0.6) -> List[str]:
    """Remove running headers, footers and bare page numbers.

    A first or last line counts as a running header/footer when the same
    text sits at that edge on at least `min_share` of the pages.

    Args:
        pages: List of page texts
        min_share: Share of pages a line must repeat on

    Returns:
        Pages with running headers/footers removed
    """
    if len(pages) < 3:
        return [_drop_page_numbers(page) for page in pages]

    edges = Counter()
    for page_text in pages:
        lines = [line.strip() for line in page_text.split('\n') if line.strip()]
        if lines:
            edges.update({lines[0], lines[-1]})

    threshold = max(2, int(len(pages) * min_share))
    repeated = {line for line, count in edges.items() if count >= threshold}

    cleaned_pages = []
    for page_text in pages:
        lines = page_text.split('\n')
        while lines and (not lines[0].strip() or lines[0].strip() in repeated):
            lines = lines[1:]
        while lines and (not lines[-1].strip() or lines[-1].strip() in repeated):
            lines = lines[:-1]
        cleaned_pages.append(_drop_page_numbers('\n'.join(lines)))

    return cleaned_pages


def _drop_page_numbers(page_text: str) -> str:
    lines = page_text.split('\n')
    if lines and PAGE_NUMBER_LINE.match(lines[-1].strip()):
        lines = lines[:-1]
    return '\n'.join(lines)
