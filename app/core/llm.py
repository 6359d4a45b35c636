"""Parsing helpers for structured provider output."""

import json
import re
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from app.core.errors import ProviderMalformedResponse

T = TypeVar("T", bound=BaseModel)


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _extract_json_object(cleaned: str) -> str:
    """Cut surrounding prose away from the outermost JSON object, if any."""
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return cleaned
    return cleaned[start : end + 1]


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Parse LLM output as JSON and validate against a Pydantic model.

    Handles common LLM response quirks:
    - Markdown code fences (```json ... ```)
    - Leading/trailing whitespace or prose around the object

    Args:
        raw_output: Raw string from LLM response
        model: Pydantic model class to validate against

    Returns:
        Validated Pydantic model instance

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        pydantic.ValidationError: If parsed JSON doesn't match schema
    """
    cleaned = _extract_json_object(_strip_llm_fences(raw_output))
    parsed = json.loads(cleaned)
    return model.model_validate(parsed)


def parse_provider_json(raw_output: str, model: type[T], provider: str | None = None) -> T:
    """
    Like ``parse_llm_json`` but reports failures as ProviderMalformedResponse.

    Raises:
        ProviderMalformedResponse: If the output is not valid JSON for ``model``
    """
    try:
        return parse_llm_json(raw_output, model)
    except (json.JSONDecodeError, ValidationError) as e:
        preview = raw_output.strip()[:120]
        raise ProviderMalformedResponse(
            f"Could not parse {model.__name__} from provider output ({type(e).__name__}): {preview!r}",
            provider=provider,
        ) from e
