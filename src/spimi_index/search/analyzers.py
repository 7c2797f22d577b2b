"""Analyzer utilities that turn raw document text into index terms.

Analyzers follow Whoosh's composable tokenizer/filter design: a tokenizer
emits ``Token`` objects and filters transform the stream. The builder only
sees the resulting term strings and lowercases them again itself, so any
analyzer can be plugged into an ingestion run.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
import re
from typing import Protocol


@dataclass
class Token:
    """Represents a token emitted by tokenizers."""

    text: str
    position: int
    start_char: int
    end_char: int

    def copy_with(self, **updates: object) -> Token:
        data = {
            "text": self.text,
            "position": self.position,
            "start_char": self.start_char,
            "end_char": self.end_char,
        }
        data.update(updates)
        return Token(**data)  # type: ignore[arg-type]


class Analyzer(Protocol):
    """Protocol implemented by analyzers: text in, terms out."""

    def __call__(self, text: str) -> list[str]:  # pragma: no cover - interface definition
        ...


class Tokenizer(Protocol):
    """Protocol implemented by tokenizers."""

    def __call__(self, text: str) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class TokenFilter(Protocol):
    """Protocol implemented by token filters."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class RegexTokenizer:
    """Regex-based tokenizer that yields word tokens."""

    def __init__(self, pattern: str = r"[\w']+", flags: int = re.UNICODE | re.MULTILINE) -> None:
        self.pattern = re.compile(pattern, flags)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(
                text=match.group(0),
                position=position,
                start_char=match.start(),
                end_char=match.end(),
            )


class LowercaseFilter:
    """Filter that lowercases token text."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.islower():
                yield token
            else:
                yield token.copy_with(text=token.text.lower())


class StripFilter:
    """Drops apostrophes at token edges and skips tokens that become empty."""

    def __init__(self, characters: str = "'_") -> None:
        self.characters = characters

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            stripped = token.text.strip(self.characters)
            if not stripped:
                continue
            if stripped == token.text:
                yield token
            else:
                yield token.copy_with(text=stripped)


DEFAULT_STOPWORDS = [
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "but",
    "by",
    "for",
    "if",
    "in",
    "into",
    "is",
    "it",
    "no",
    "not",
    "of",
    "on",
    "or",
    "such",
    "that",
    "the",
    "their",
    "then",
    "there",
    "these",
    "they",
    "this",
    "to",
    "was",
    "will",
    "with",
]


def load_stopwords(path: str | Path) -> list[str]:
    """Read a newline-delimited stopwords file, ignoring blanks and ``#`` comments."""
    words: list[str] = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        word = line.strip()
        if word and not word.startswith("#"):
            words.append(word)
    return words


class StopFilter:
    """Removes stopwords from the stream."""

    def __init__(self, stopwords: Sequence[str] | None = None) -> None:
        vocab = stopwords if stopwords is not None else DEFAULT_STOPWORDS
        self.stopwords = {word.lower() for word in vocab}

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.lower() not in self.stopwords:
                yield token


class AnalyzerPipeline:
    """Composable analyzer pipeline (tokenizer + filters)."""

    def __init__(self, tokenizer: Tokenizer, filters: Sequence[TokenFilter] | None = None) -> None:
        self.tokenizer = tokenizer
        self.filters = list(filters or [])

    def tokens(self, text: str) -> list[Token]:
        stream: Iterable[Token] = self.tokenizer(text)
        for token_filter in self.filters:
            stream = token_filter(stream)
        tokens = list(stream)
        for idx, token in enumerate(tokens):  # normalize positions post-filtering
            token.position = idx
        return tokens

    def __call__(self, text: str) -> list[str]:
        return [token.text for token in self.tokens(text)]


class EnglishAnalyzer:
    """Default analyzer: word tokens, lowercased, English stopwords removed."""

    def __init__(self, *, stopwords: Sequence[str] | None = None) -> None:
        filters: list[TokenFilter] = [StripFilter(), LowercaseFilter(), StopFilter(stopwords)]
        self.pipeline = AnalyzerPipeline(RegexTokenizer(), filters)

    def __call__(self, text: str) -> list[str]:
        return self.pipeline(text)


class SimpleAnalyzer:
    """Word tokens, lowercased, with no stopword removal."""

    def __init__(self) -> None:
        self.pipeline = AnalyzerPipeline(RegexTokenizer(), [StripFilter(), LowercaseFilter()])

    def __call__(self, text: str) -> list[str]:
        return self.pipeline(text)


_ANALYZER_FACTORIES: dict[str, Callable[[Sequence[str] | None], Analyzer]] = {
    "default": lambda stopwords: EnglishAnalyzer(stopwords=stopwords),
    "english": lambda stopwords: EnglishAnalyzer(stopwords=stopwords),
    "simple": lambda stopwords: SimpleAnalyzer(),
}


def get_analyzer(name: str | None = None, *, stopwords_path: str | Path | None = None) -> Analyzer:
    """Return analyzer by name, defaulting to the English analyzer.

    Args:
        name: Analyzer name (``default``, ``english`` or ``simple``)
        stopwords_path: Optional stopwords file replacing the built-in list
    """
    normalized = (name or "default").lower()
    if normalized not in _ANALYZER_FACTORIES:
        msg = f"Unknown analyzer '{name}'. Available: {sorted(_ANALYZER_FACTORIES)}"
        raise ValueError(msg)
    stopwords = load_stopwords(stopwords_path) if stopwords_path is not None else None
    return _ANALYZER_FACTORIES[normalized](stopwords)
