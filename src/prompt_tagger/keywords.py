"""
Keyword dictionary loading and prompt-to-label matching.

The dictionary maps free-text terms to one or more human-readable labels, e.g.
``{"oak": "Tree: Oak", "pine tree": ["Tree: Pine", "Plant: Conifer"]}``.
Prompt text is matched against it phrase by phrase, longest term first.
"""

import json
import re
from collections.abc import Iterable, Mapping
from pathlib import Path

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from prompt_tagger.extraction import PromptEntry


RawKeywordDictionary = dict[str, str | list[str]]

_WHITESPACE = re.compile(r"\s+")
_PARENTHESES = re.compile(r"[()]")
_DICTIONARY_ADAPTER = TypeAdapter(RawKeywordDictionary)


class KeywordDictionaryError(ValueError):
    """Raised when a keyword dictionary file cannot be read or validated."""


def normalize_term(term: str) -> str:
    """
    Lowercase, trim and collapse inner whitespace.

    Examples:
        >>> normalize_term("  Pine   Tree ")
        'pine tree'

    """
    return _WHITESPACE.sub(" ", term.strip().lower())


def compact_term(term: str) -> str:
    """
    Remove every whitespace character.

    Examples:
        >>> compact_term("pine tree")
        'pinetree'

    """
    return _WHITESPACE.sub("", term)


def clean_phrase(phrase: str) -> str:
    """
    Prepare one comma-separated prompt phrase for matching.

    Drops a colon qualifier (e.g. prompt weights like ``oak:1.2``), strips
    parentheses, lowercases and collapses whitespace.

    Examples:
        >>> clean_phrase(" (Old  OAK:1.3) ")
        'old oak'

    """
    without_qualifier = phrase.split(":", 1)[0]
    return normalize_term(_PARENTHESES.sub("", without_qualifier))


def load_keyword_dictionary(path: Path) -> RawKeywordDictionary:
    """
    Read a JSON keyword dictionary from disk.

    Args:
        path: JSON file holding an object of ``term -> label`` or
              ``term -> [label, ...]`` pairs.

    Returns:
        The validated raw dictionary, ready for KeywordMatcher.

    Raises:
        KeywordDictionaryError: If the file is missing, unreadable, not JSON, or
            does not have the expected shape.

    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read keyword dictionary {path}: {exc}"
        raise KeywordDictionaryError(msg) from exc

    try:
        dictionary = _DICTIONARY_ADAPTER.validate_python(json.loads(content))
    except (ValueError, ValidationError) as exc:
        msg = f"Invalid keyword dictionary {path}: {exc}"
        raise KeywordDictionaryError(msg) from exc

    logger.info("keyword_dictionary_loaded", file=str(path), terms=len(dictionary))
    return dictionary


class KeywordMatcher:
    """
    Longest-match, space-tolerant keyword matcher over a static dictionary.

    The dictionary is normalized once at construction. Each term is indexed
    both as written ("pine tree") and with its whitespace removed ("pinetree"),
    and the candidates are pre-sorted longest first. The matcher is read-only
    after construction and safe to share between concurrent jobs.
    """

    def __init__(self, dictionary: Mapping[str, str | Iterable[str]]) -> None:
        """Normalize the dictionary and precompute the longest-first orderings."""
        normalized_terms: set[str] = set()
        self._labels: dict[str, tuple[str, ...]] = {}
        self._compact_labels: dict[str, tuple[str, ...]] = {}
        for raw_term, raw_labels in dictionary.items():
            term = normalize_term(raw_term)
            if not term:
                logger.warning("empty_keyword_term_ignored", raw_term=raw_term)
                continue
            labels = [raw_labels] if isinstance(raw_labels, str) else list(raw_labels)
            labels = [label.strip() for label in labels if label and label.strip()]
            normalized_terms.add(term)
            _add_labels(self._labels, term, labels)
            _add_labels(self._labels, compact_term(term), labels)
            _add_labels(self._compact_labels, compact_term(term), labels)

        self._term_count = len(normalized_terms)
        self._terms = sorted(self._labels, key=len, reverse=True)
        self._compact_terms = sorted(self._compact_labels, key=len, reverse=True)
        logger.debug("keyword_matcher_ready", terms=self._term_count)

    def __len__(self) -> int:
        return self._term_count

    def _match_at_start(self, text: str) -> tuple[tuple[str, ...], str] | None:
        """
        Match the longest known term at the start of ``text``.

        Returns:
            ``(labels, remaining_text)`` on a match, otherwise None.

        """
        for term in self._terms:
            if text.startswith(term):
                return self._labels[term], text[len(term) :].strip()

        compact_text = compact_term(text)
        for term in self._compact_terms:
            if compact_text.startswith(term):
                return self._compact_labels[term], _consume_non_space(text, len(term))

        return None

    def find_keywords_in_phrase(self, phrase: str) -> set[str]:
        """Match one comma-free phrase, dropping unmatched leading words."""
        matches: set[str] = set()
        remaining = clean_phrase(phrase)

        while remaining:
            result = self._match_at_start(remaining)
            if result is None:
                words = remaining.split(maxsplit=1)
                remaining = words[1] if len(words) > 1 else ""
                continue
            labels, remaining = result
            matches.update(labels)

        return matches

    def find_keywords(self, text: str) -> set[str]:
        """
        Return every label whose term appears in ``text``.

        Examples:
            >>> matcher = KeywordMatcher({"oak": "Tree: Oak", "sunset": "TimeOfDay: Sunset"})
            >>> sorted(matcher.find_keywords("a red barn, oak tree, SUN SET"))
            ['TimeOfDay: Sunset', 'Tree: Oak']

        """
        matched: set[str] = set()
        for phrase in text.split(","):
            matched.update(self.find_keywords_in_phrase(phrase))
        return matched

    def find_keywords_in_prompts(self, prompts: Iterable[PromptEntry]) -> set[str]:
        """Union of the labels found in every prompt's text."""
        matched: set[str] = set()
        for prompt in prompts:
            found = self.find_keywords(prompt.original_text)
            logger.debug("prompt_keywords_found", source_key=prompt.source_key, count=len(found))
            matched.update(found)
        return matched


def _consume_non_space(text: str, count: int) -> str:
    """
    Skip ``count`` non-whitespace characters of ``text`` and return the trimmed rest.

    Examples:
        >>> _consume_non_space("pine tree forest", 8)
        'forest'

    """
    consumed = 0
    index = 0
    while index < len(text) and consumed < count:
        if not text[index].isspace():
            consumed += 1
        index += 1
    return text[index:].strip()


def _add_labels(index: dict[str, tuple[str, ...]], key: str, labels: Iterable[str]) -> None:
    """Append ``labels`` to ``index[key]``, keeping first-seen order without duplicates."""
    index[key] = tuple(dict.fromkeys([*index.get(key, ()), *labels]))
