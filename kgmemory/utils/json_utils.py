"""
JSON helpers for model responses and list-valued fields stored as strings.
"""

import json
from typing import Any, List


def clean_json_response(response: str) -> str:
    """Strip code fences a model wraps around its JSON answer.

    Args:
        response: Raw model response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_response(response: str) -> Any:
    """Clean and decode a model response.

    Raises:
        json.JSONDecodeError: If the cleaned text is not valid JSON
    """
    return json.loads(clean_json_response(response))


def dump_list(values: List[Any]) -> str:
    """Serialize a list field for stores that only accept scalar metadata."""
    return json.dumps(list(values))


def load_list(value: Any) -> List[Any]:
    """Read back a list field written by :func:`dump_list`.

    Accepts an actual list, a JSON-encoded list, or a comma-separated string
    left behind by older writers. Anything else yields an empty list.
    """
    if value is None or value == '':
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return [part.strip() for part in value.split(',') if part.strip()]
        if isinstance(decoded, list):
            return decoded
    return []
