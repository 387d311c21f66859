"""
Token counting and usage tracking.

Extracts token counts from the response shapes of different providers.
Each provider registers an extraction strategy by name; providers without
one fall back to a generic lookup of the common field names.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    """
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


ZERO_USAGE = TokenUsage(prompt_tokens=0, completion_tokens=0)

TokenExtractor = Callable[[Any], TokenUsage]


def _field(source: Any, name: str) -> Any:
    """Read ``name`` from a mapping or an SDK response object."""
    if source is None:
        return None
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _to_count(name: str, value: Any) -> int:
    """Coerce a reported token count, treating unusable values as zero."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        logger.warning("Ignoring unusable token count %s=%r", name, value)
        return 0
    return value


def _first_count(source: Any, names: Sequence[str]) -> int:
    for name in names:
        count = _to_count(name, _field(source, name))
        if count:
            return count
    return 0


class FieldMappingExtractor:
    """Reads prompt/completion counts from a named section of the response."""

    def __init__(
        self,
        section: str,
        prompt_fields: Sequence[str],
        completion_fields: Sequence[str],
    ):
        self.section = section
        self.prompt_fields = tuple(prompt_fields)
        self.completion_fields = tuple(completion_fields)

    def __call__(self, response: Any) -> TokenUsage:
        usage = _field(response, self.section)
        return TokenUsage(
            prompt_tokens=_first_count(usage, self.prompt_fields),
            completion_tokens=_first_count(usage, self.completion_fields),
        )


generic_extractor = FieldMappingExtractor(
    "usage",
    prompt_fields=("prompt_tokens", "input_tokens"),
    completion_fields=("completion_tokens", "output_tokens"),
)

_EXTRACTORS: Dict[str, TokenExtractor] = {
    "openai": FieldMappingExtractor("usage", ("prompt_tokens",), ("completion_tokens",)),
    "anthropic": FieldMappingExtractor("usage", ("input_tokens",), ("output_tokens",)),
    "google": FieldMappingExtractor(
        "usageMetadata", ("promptTokenCount",), ("candidatesTokenCount",)
    ),
}


def register_extractor(provider: str, extractor: TokenExtractor) -> None:
    """Register (or replace) the extraction strategy for a provider."""
    _EXTRACTORS[provider.lower()] = extractor


def get_extractor(provider: Optional[str]) -> TokenExtractor:
    return _EXTRACTORS.get((provider or "").lower(), generic_extractor)


def extract_token_usage(response: Any, provider: Optional[str]) -> TokenUsage:
    """Extract token counts for a provider response.

    Never raises: an unreadable response yields zero counts so that the
    call is still recorded.
    """
    try:
        return get_extractor(provider)(response)
    except (TypeError, ValueError, AttributeError) as e:
        logger.error("Error extracting tokens for provider %s: %s", provider, e)
        return ZERO_USAGE
