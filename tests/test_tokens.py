"""Test token counting and token-bounded splitting."""
import pytest

from utils.tokens import TokenCounter, count_tokens, estimate_tokens, get_token_counter


@pytest.fixture
def counter():
    return get_token_counter()


def test_count_empty_and_simple(counter):
    """Empty text has no tokens; short English words are one token each."""
    assert counter.count("") == 0
    assert counter.count("hello world") == 2
    assert count_tokens("hello world") == 2


def test_special_token_text_is_counted_not_rejected(counter):
    """Text that looks like a special token is counted as plain text."""
    assert counter.count("<|endoftext|>") > 1


def test_estimate_is_quarter_of_characters():
    """The fast estimate rounds characters / 4 up."""
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("") == 0


def test_tokenizer_failure_falls_back_to_word_estimate(monkeypatch):
    """A failing tokenizer never raises out of count()."""
    counter = TokenCounter()

    def broken(*args, **kwargs):
        raise RuntimeError("tokenizer exploded")

    monkeypatch.setattr(counter.tokenizer, "encode", broken)
    # 3 words / 0.75 = 4
    assert counter.count("one two three") == 4


def test_split_at_token_count_keeps_text_intact(counter):
    """Head and tail concatenate back to the input and the head fits."""
    text = " ".join(f"word{i}" for i in range(200))
    head, tail = counter.split_at_token_count(text, 50)

    assert head + tail == text
    assert counter.count(head) <= 50
    assert tail
    assert not head.endswith(" ")


def test_split_at_token_count_whole_text_fits(counter):
    head, tail = counter.split_at_token_count("short text", 100)
    assert head == "short text"
    assert tail == ""


def test_split_always_takes_one_word(counter):
    """Even a zero budget makes progress by one word."""
    head, tail = counter.split_at_token_count("alpha beta gamma", 0)
    assert head == "alpha"
    assert tail == " beta gamma"


def test_last_sentence_end(counter):
    assert counter.last_sentence_end("Hi there. And more") == 9
    assert counter.last_sentence_end("No terminator here") is None
    # Decimal points are not sentence ends
    assert counter.last_sentence_end("Version 2.5 is out") is None


def test_find_sentence_boundary_prefers_sentence_end(counter):
    text = "First sentence. Second sentence continues here"
    assert counter.find_sentence_boundary(text, 30) == len("First sentence.")


def test_find_sentence_boundary_falls_back_to_space(counter):
    text = "no sentence ends in this text at all"
    cut = counter.find_sentence_boundary(text, 12)
    assert text[:cut] == "no sentence "


def test_is_within_limit(counter):
    assert counter.is_within_limit("hello world", 2)
    assert not counter.is_within_limit("hello world", 1)


def test_get_stats(counter):
    stats = counter.get_stats("hello world")
    assert stats.characters == 11
    assert stats.words == 2
    assert stats.exact_tokens == 2
    assert stats.estimated_tokens == 3
    assert stats.chars_per_token == 5.5


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
