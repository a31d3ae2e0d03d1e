"""Prompt template for the Gemini-backed similarity oracle.

The model is asked for a single structured score so the response can be
validated against a strict schema instead of being scraped from prose.
"""

from typing import Any, Dict

from src.duplicate_detection.oracle import SIMILARITY_FIELD


SIMILARITY_PROMPT_TEMPLATE = """Calculate the semantic similarity between these two technical incident texts on a scale of 0.0 to 1.0, where:
- 0.0 means completely different topics
- 0.5 means somewhat related but different issues
- 0.8 means very similar issues with minor differences
- 1.0 means identical issues

TEXT 1: {text_a}

TEXT 2: {text_b}

Analyze the semantic meaning, technical context, and core issue described in both texts.

Respond with a JSON object containing only the "{field}" number."""


def build_similarity_prompt(text_a: str, text_b: str) -> str:
    """Build the scoring prompt for one pair of texts."""
    return SIMILARITY_PROMPT_TEMPLATE.format(text_a=text_a, text_b=text_b, field=SIMILARITY_FIELD)


def get_similarity_response_schema() -> Dict[str, Any]:
    """Return the JSON schema dict for the Gemini response_schema parameter."""
    return {
        "type": "object",
        "properties": {
            SIMILARITY_FIELD: {"type": "number"},
        },
        "required": [SIMILARITY_FIELD],
    }
