"""LLM client utilities for LangChain integration."""

import json
import re

from langchain_openai import ChatOpenAI

from app.core.config import get_settings


def get_llm(model: str | None = None, temperature: float = 0.1, max_tokens: int | None = None) -> ChatOpenAI:
    """
    Get configured LLM instance for classifiers and background analyses.

    Args:
        model: Model name override (defaults to CLASSIFIER_MODEL)
        temperature: Temperature for generation (default 0.1)
        max_tokens: Optional output cap

    Returns:
        ChatOpenAI instance configured with API key and model
    """
    settings = get_settings()

    model_name = model or settings.CLASSIFIER_MODEL

    kwargs = {}
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    return ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=model_name,
        temperature=temperature,
        **kwargs,
    )


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


def extract_first_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` object in model text, or None.

    Handles plain JSON, fenced JSON, and JSON surrounded by prose.
    """
    cleaned = _strip_llm_fences(text)
    if not cleaned:
        return None
    if cleaned.startswith("{") and cleaned.endswith("}"):
        return cleaned

    start = cleaned.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(cleaned)):
        ch = cleaned[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start : i + 1]
    return None


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse LLM output as JSON, returning a raw dict.

    Raises:
        json.JSONDecodeError: If no JSON object can be recovered
    """
    payload = extract_first_json_object(raw_output)
    if payload is None:
        raise json.JSONDecodeError("No JSON object found", raw_output, 0)
    parsed = json.loads(payload)
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("Expected a JSON object", raw_output, 0)
    return parsed
