import re
import json
from typing import Any, Dict

from pydantic import ValidationError

from cardgen.errors import ResponseValidationError
from cardgen.generation.schema import FLASHCARD_SCHEMA, FlashcardBatch
from cardgen.utils import get_logger

LOG = get_logger()

_CODE_FENCE_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)\s*```')


def extract_json(raw: str) -> str:
    """Pull the first balanced JSON object or array out of a model response.

    Markdown fences and surrounding prose are tolerated. Brackets inside
    string literals do not count towards nesting depth.
    """
    text = (raw or '').strip()
    fenced = _CODE_FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    start = -1
    for i, ch in enumerate(text):
        if ch in '{[':
            start = i
            break
    if start == -1:
        raise ValueError('No valid JSON found in response')

    open_char = text[start]
    close_char = '}' if open_char == '{' else ']'
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    raise ValueError('Incomplete JSON in response')


def validate_against_schema(data: Any, schema: Dict[str, Any]):
    if not isinstance(data, dict):
        raise ValueError('Response must be a valid object')
    required = schema.get('required', [])
    for prop in required:
        if prop not in data:
            raise ValueError(f'Missing required property: {prop}')
    if not schema.get('additionalProperties', True):
        allowed = set(required) | set(schema.get('properties', {}).keys())
        for prop in data:
            if prop not in allowed:
                raise ValueError(f'Unexpected property: {prop}')


def parse_structured_response(raw: str, schema: Dict[str, Any] = FLASHCARD_SCHEMA) -> FlashcardBatch:
    try:
        parsed = json.loads(extract_json(raw))
        if isinstance(parsed, list):
            parsed = {'flashcards': parsed}
        elif not isinstance(parsed, dict) or 'flashcards' not in parsed:
            raise ValueError('Invalid response format: expected array or object with flashcards property')
        validate_against_schema(parsed, schema)
        return FlashcardBatch.model_validate(parsed)
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError is a ValueError too
        LOG.warning('structured_response_invalid', extra={'error': str(e)})
        raise ResponseValidationError(f'Failed to parse structured response: {e}') from e
