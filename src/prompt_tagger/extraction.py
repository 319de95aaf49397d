"""
Prompt extraction from embedded image metadata.

Generators store their input prompt in different textual metadata encodings.
Each encoding is handled by a strategy: a named function that returns the
prompt entries it can find, or None. PromptExtractionService tries the
strategies in order and keeps the first usable result.
"""

import json
from collections.abc import Callable, Sequence
from typing import Any, NamedTuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field


PARAMETERS_KEYWORD = "parameters"
PROMPT_KEYWORD = "prompt"
NEGATIVE_PROMPT_MARKER = "Negative prompt:"
POPULATED_TEXT_FIELD = "populated_text"


class MetadataComment(BaseModel):
    """One textual metadata chunk (PNG tEXt/zTXt/iTXt) read from an image."""

    model_config = ConfigDict(frozen=True)

    keyword: str
    text: str


class ImageMetadata(BaseModel):
    """Embedded metadata relevant to prompt extraction."""

    model_config = ConfigDict(frozen=True)

    format: str | None = None
    comments: tuple[MetadataComment, ...] | None = None

    def find_comment(self, keyword: str) -> MetadataComment | None:
        """Return the first comment stored under ``keyword``."""
        return next((c for c in self.comments or () if c.keyword == keyword), None)


class PromptEntry(BaseModel):
    """A single extracted prompt and the metadata slot it came from."""

    model_config = ConfigDict(frozen=True)

    source_key: str
    original_text: str


class ExtractionResult(BaseModel):
    """Prompts produced by the winning strategy."""

    model_config = ConfigDict(frozen=True)

    strategy_id: str
    prompts: tuple[PromptEntry, ...] = Field(min_length=1)

    @property
    def description(self) -> str:
        """Raw text of the first prompt, used as the image description."""
        return self.prompts[0].original_text


StrategyFunc = Callable[[ImageMetadata], Sequence[PromptEntry] | None]


class PromptStrategy(NamedTuple):
    """A named extraction function."""

    identifier: str
    extract: StrategyFunc


def extract_parameters_prompt(metadata: ImageMetadata) -> list[PromptEntry] | None:
    """
    Read the positive prompt from a plain ``parameters`` text block.

    Everything before the ``Negative prompt:`` marker is the prompt; without
    the marker the whole text is used.

    Examples:
        >>> meta = ImageMetadata(comments=(MetadataComment(
        ...     keyword="parameters", text="a red barn\\nNegative prompt: blurry"),))
        >>> extract_parameters_prompt(meta)[0].original_text
        'a red barn'

    """
    comment = metadata.find_comment(PARAMETERS_KEYWORD)
    if comment is None:
        logger.debug("parameters_comment_not_found")
        return None

    positive, _, _ = comment.text.partition(NEGATIVE_PROMPT_MARKER)
    positive = positive.strip()
    if not positive:
        logger.debug("parameters_comment_has_no_positive_prompt")
        return None

    return [PromptEntry(source_key="primary", original_text=positive)]


def extract_workflow_prompts(metadata: ImageMetadata) -> list[PromptEntry] | None:
    """
    Read populated prompt texts from a JSON ``prompt`` record.

    The record maps node ids to nodes; every node with a non-blank
    ``inputs.populated_text`` string contributes one entry keyed by its id.
    Malformed JSON is reported as no match.
    """
    comment = metadata.find_comment(PROMPT_KEYWORD)
    if comment is None:
        logger.debug("prompt_comment_not_found")
        return None

    try:
        record: Any = json.loads(comment.text)
    except ValueError as exc:
        logger.warning("prompt_comment_invalid_json", error=str(exc))
        return None

    if not isinstance(record, dict):
        logger.warning("prompt_comment_not_an_object", type=type(record).__name__)
        return None

    prompts: list[PromptEntry] = []
    for key, node in record.items():
        inputs = node.get("inputs") if isinstance(node, dict) else None
        text = inputs.get(POPULATED_TEXT_FIELD) if isinstance(inputs, dict) else None
        if isinstance(text, str) and text.strip():
            prompts.append(PromptEntry(source_key=str(key), original_text=text))

    if not prompts:
        logger.debug("prompt_comment_has_no_populated_text")
        return None

    return prompts


PARAMETERS_STRATEGY = PromptStrategy("parameters", extract_parameters_prompt)
JSON_PROMPT_STRATEGY = PromptStrategy("jsonPrompt", extract_workflow_prompts)
DEFAULT_STRATEGIES: tuple[PromptStrategy, ...] = (PARAMETERS_STRATEGY, JSON_PROMPT_STRATEGY)


class PromptExtractionService:
    """Run extraction strategies in order and keep the first that finds prompts."""

    def __init__(self, strategies: Sequence[PromptStrategy] = DEFAULT_STRATEGIES) -> None:
        self.strategies = tuple(strategies)

    def extract_prompts(self, metadata: ImageMetadata) -> ExtractionResult | None:
        """
        Extract prompts with the first strategy that succeeds.

        Args:
            metadata: Embedded metadata read from the image.

        Returns:
            The winning strategy's id and prompts, or None when no strategy
            produced a non-empty result. Strategies raising an exception are
            logged and skipped.

        """
        for strategy in self.strategies:
            logger.debug("trying_extraction_strategy", strategy=strategy.identifier)
            try:
                prompts = strategy.extract(metadata)
            except Exception as exc:  # noqa: BLE001
                logger.opt(exception=exc).error(
                    "extraction_strategy_failed",
                    strategy=strategy.identifier,
                    error=str(exc),
                )
                continue

            if prompts:
                logger.debug(
                    "extraction_strategy_succeeded",
                    strategy=strategy.identifier,
                    prompt_count=len(prompts),
                )
                return ExtractionResult(strategy_id=strategy.identifier, prompts=tuple(prompts))

        logger.debug("no_extraction_strategy_matched", tried=len(self.strategies))
        return None
