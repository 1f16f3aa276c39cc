import json
import pytest

from cardgen.errors import ErrorKind, ResponseValidationError
from cardgen.generation.response_parser import extract_json, parse_structured_response, validate_against_schema
from cardgen.generation.schema import FLASHCARD_SCHEMA, Difficulty
from tests.fixtures.mock_provider import SAMPLE_FLASHCARDS, flashcards_json


@pytest.mark.unit
def test_fenced_json_parses_like_bare_json():
    fenced = parse_structured_response(flashcards_json(fenced=True))
    bare = parse_structured_response(flashcards_json())
    assert fenced == bare
    assert len(bare.flashcards) == 3
    assert bare.flashcards[0].difficulty == Difficulty.MEDIUM


@pytest.mark.unit
def test_bare_array_is_wrapped():
    batch = parse_structured_response(json.dumps(SAMPLE_FLASHCARDS[:2]))
    assert [c.front_text for c in batch.flashcards] == [c['front_text'] for c in SAMPLE_FLASHCARDS[:2]]


@pytest.mark.unit
def test_extract_json_with_surrounding_prose():
    raw = 'Sure! {"flashcards": [{"front_text": "a {b}", "back_text": "c]", "difficulty": "easy", "category": "x"}]} hope it helps {'
    assert json.loads(extract_json(raw))['flashcards'][0]['front_text'] == 'a {b}'


@pytest.mark.unit
def test_extract_json_handles_escaped_quotes():
    raw = '{"a": "say \\"}\\" please", "b": [1, 2]}'
    assert json.loads(extract_json(raw)) == {'a': 'say "}" please', 'b': [1, 2]}


@pytest.mark.unit
def test_extract_json_errors():
    with pytest.raises(ValueError, match='No valid JSON'):
        extract_json('no json here')
    with pytest.raises(ValueError, match='Incomplete JSON'):
        extract_json('{"flashcards": [')


@pytest.mark.unit
@pytest.mark.parametrize('raw', [
    '',
    'plain text',
    '{"cards": []}',
    '{"flashcards": []}',
    json.dumps({'flashcards': [{'front_text': 'q', 'back_text': 'a', 'difficulty': 'extreme', 'category': 'c'}]}),
    json.dumps({'flashcards': [{'front_text': 'q' * 201, 'back_text': 'a', 'difficulty': 'easy', 'category': 'c'}]}),
    json.dumps({'flashcards': [{'front_text': 'q', 'back_text': 'a' * 501, 'difficulty': 'easy', 'category': 'c'}]}),
    json.dumps({'flashcards': [{'front_text': 'q', 'back_text': 'a', 'difficulty': 'easy'}]}),
    json.dumps({'flashcards': [{'front_text': 'q', 'back_text': 'a', 'difficulty': 'easy', 'category': 'c', 'extra': 1}]}),
    json.dumps({'flashcards': SAMPLE_FLASHCARDS * 4}),
    json.dumps({'flashcards': SAMPLE_FLASHCARDS, 'notes': 'extra'}),
    '{"flashcards": [{"front_text": "q",}]}',
])
def test_invalid_responses_raise_validation_error(raw):
    with pytest.raises(ResponseValidationError) as ei:
        parse_structured_response(raw)
    assert ei.value.kind == ErrorKind.VALIDATION_ERROR
    assert ei.value.is_retryable is False
    assert ei.value.message.startswith('Failed to parse structured response')


@pytest.mark.unit
def test_validate_against_schema():
    validate_against_schema({'flashcards': []}, FLASHCARD_SCHEMA)
    with pytest.raises(ValueError, match='Missing required property'):
        validate_against_schema({}, FLASHCARD_SCHEMA)
    with pytest.raises(ValueError, match='Unexpected property'):
        validate_against_schema({'flashcards': [], 'x': 1}, FLASHCARD_SCHEMA)
    with pytest.raises(ValueError, match='valid object'):
        validate_against_schema([], FLASHCARD_SCHEMA)
