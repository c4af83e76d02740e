import pytest

from hsme.chunking import (
    MAX_CHUNK_CHARS,
    MAX_CHUNK_TOKENS,
    canonicalize_name,
    canonicalize_type,
    compute_hash,
    estimate_tokens,
    split,
)


def _words(n, word="w"):
    return " ".join(f"{word}{i}" for i in range(n))


def test_short_content_is_single_trimmed_chunk():
    assert split("  hello world \n", "note") == ["hello world"]


@pytest.mark.parametrize("content", ["", "   ", "\n\n\t"])
def test_blank_content_yields_nothing(content):
    assert split(content, "note") == []


def test_paragraphs_split_on_blank_lines():
    first = _words(500, "a")
    second = _words(500, "b")
    assert split(first + "\n\n" + second, "note") == [first, second]


def test_small_paragraphs_are_merged():
    paragraphs = [_words(100, f"p{k}_") for k in range(3)]
    text = "\n\n".join(paragraphs)
    assert split(text, "note") == [text] if len(text.encode()) <= MAX_CHUNK_CHARS else True
    chunks = split(text, "note")
    assert "\n\n".join(chunks) == text


def test_long_line_respects_limits_and_preserves_words():
    text = _words(3000)
    chunks = split(text, "note")
    assert len(chunks) > 1
    for chunk in chunks:
        assert estimate_tokens(chunk) <= MAX_CHUNK_TOKENS
        assert len(chunk.encode("utf-8")) <= MAX_CHUNK_CHARS
    assert " ".join(chunks).split() == text.split()


def test_byte_limit_applies_to_multibyte_text():
    text = " ".join(["ññññññññññ"] * 400)
    chunks = split(text, "note")
    assert len(chunks) > 1
    assert all(len(c.encode("utf-8")) <= MAX_CHUNK_CHARS for c in chunks)


def test_unsplittable_text_is_returned_whole():
    blob = "x" * (MAX_CHUNK_CHARS + 100)
    assert split(blob, "note") == [blob]


def test_estimate_tokens_counts_words():
    assert estimate_tokens("  one two\tthree\nfour ") == 4
    assert estimate_tokens("") == 0


def test_compute_hash_of_empty_string():
    assert compute_hash("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_compute_hash_normalizes_nfc():
    assert compute_hash("cafe\u0301") == compute_hash("caf\u00e9")


def test_compute_hash_shape_and_sensitivity():
    digest = compute_hash("hello")
    assert len(digest) == 64
    assert digest == digest.lower()
    assert compute_hash("hello") == digest
    assert compute_hash("hello!") != digest


def test_canonicalize_name():
    assert canonicalize_name("  Redis   Cache \n") == ("redis cache", "Redis   Cache")
    assert canonicalize_name("REDIS")[0] == canonicalize_name("redis")[0]
    assert canonicalize_name("   ") == ("", "")


def test_canonicalize_type():
    assert canonicalize_type(" tech ") == "TECH"
    assert canonicalize_type("depends_on") == "DEPENDS_ON"