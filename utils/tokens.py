"""Token counting and token-bounded text splitting."""
import math
import re
from typing import Tuple

import tiktoken
from pydantic import BaseModel

from utils.logger import setup_logger

logger = setup_logger(__name__)

WORD_PATTERN = re.compile(r'\S+')
SENTENCE_END_PATTERN = re.compile(r'[.!?](?=\s|$)')


class TokenStats(BaseModel):
    """Size statistics for a piece of text."""
    characters: int
    words: int
    estimated_tokens: int
    exact_tokens: int
    chars_per_token: float


class TokenCounter:
    """Counts tokens with a model-compatible tokenizer."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        """Initialize the counter.

        Args:
            encoding_name: tiktoken encoding name
        """
        self.encoding_name = encoding_name
        self.tokenizer = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        """Count tokens exactly.

        Falls back to a words/0.75 approximation if the tokenizer fails.

        Args:
            text: Text to count

        Returns:
            Token count
        """
        if not text:
            return 0
        try:
            return len(self.tokenizer.encode(text, disallowed_special=()))
        except Exception as e:
            logger.warning(f"Tokenizer failed, using word-based approximation: {e}")
            return math.ceil(len(text.split()) / 0.75)

    def estimate(self, text: str) -> int:
        """Fast ~4 characters per token estimate."""
        return math.ceil(len(text) / 4)

    def is_within_limit(self, text: str, limit: int) -> bool:
        return self.count(text) <= limit

    def split_at_token_count(self, text: str, max_tokens: int) -> Tuple[str, str]:
        """Split text so the head fits within max_tokens.

        Cuts only at word boundaries, keeping the original whitespace. The
        head always contains at least one word so callers make progress.

        Args:
            text: Text to split
            max_tokens: Token budget for the head

        Returns:
            (head, tail) where head + tail == text
        """
        if self.estimate(text) <= max_tokens and self.count(text) <= max_tokens:
            return text, ""

        word_ends = [m.end() for m in WORD_PATTERN.finditer(text)]
        if not word_ends:
            return text, ""

        left, right = 0, len(word_ends)
        best = 0
        while left < right:
            mid = (left + right) // 2
            candidate = text[:word_ends[mid]]
            if self.count(candidate) <= max_tokens:
                best = mid + 1
                left = mid + 1
            else:
                right = mid

        cut = word_ends[max(best, 1) - 1]
        return text[:cut], text[cut:]

    def find_sentence_boundary(self, text: str, max_pos: int) -> int:
        """Find the best position to cut text at or before max_pos.

        Prefers the end of the last sentence, then a paragraph break, then a
        space.

        Args:
            text: Text to search
            max_pos: Upper bound for the cut position

        Returns:
            Cut position
        """
        window = text[:max_pos]

        last_sentence_end = None
        for match in SENTENCE_END_PATTERN.finditer(window):
            last_sentence_end = match.end()
        if last_sentence_end is not None:
            return last_sentence_end

        paragraph_break = window.rfind("\n\n")
        if paragraph_break != -1:
            return paragraph_break + 2

        last_space = window.rfind(" ")
        if last_space != -1:
            return last_space + 1

        return max_pos

    def last_sentence_end(self, text: str) -> int | None:
        """Position just after the last sentence terminator, if any."""
        position = None
        for match in SENTENCE_END_PATTERN.finditer(text):
            position = match.end()
        return position

    def get_stats(self, text: str) -> TokenStats:
        exact = self.count(text)
        return TokenStats(
            characters=len(text),
            words=len(text.split()),
            estimated_tokens=self.estimate(text),
            exact_tokens=exact,
            chars_per_token=round(len(text) / exact, 2) if exact else 0.0
        )


_default_counter: TokenCounter | None = None


def get_token_counter() -> TokenCounter:
    """Return the shared cl100k_base counter."""
    global _default_counter
    if _default_counter is None:
        _default_counter = TokenCounter()
    return _default_counter


def count_tokens(text: str) -> int:
    return get_token_counter().count(text)


def estimate_tokens(text: str) -> int:
    return get_token_counter().estimate(text)
