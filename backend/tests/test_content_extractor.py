from __future__ import annotations

import pytest

from storyrelay.services.content_extractor import extract_narrative


def test_plain_prose_is_returned_trimmed() -> None:
    assert extract_narrative("  The rain keeps falling.  ") == "The rain keeps falling."


def test_unterminated_document_is_captured_by_field_pattern() -> None:
    raw = '{"nextStrory": "<Narration>\\nHello\\n</Narration>"'
    assert extract_narrative(raw) == "<Narration>\nHello\n</Narration>"


def test_fenced_json_reply_is_unwrapped() -> None:
    raw = '```json\n{"story": "Once upon a time."}\n```'
    assert extract_narrative(raw) == "Once upon a time."


def test_html_entities_are_normalized() -> None:
    assert extract_narrative("&lt;Narration&gt;Hi&lt;/Narration&gt;") == "<Narration>Hi</Narration>"


def test_escaped_quotes_and_tabs_are_decoded() -> None:
    raw = '{"story": "He said \\"hi\\"\\tand left.", "mood": "calm"}'
    assert extract_narrative(raw) == 'He said "hi"\tand left.'


def test_nested_output_schema_field_is_found() -> None:
    raw = '{"output_schema": {"nextStory": "Deep in the forest."}}'
    assert extract_narrative(raw) == "Deep in the forest."


def test_cut_off_value_keeps_received_text() -> None:
    raw = '{"next_story": "The door opens and'
    assert extract_narrative(raw) == "The door opens and"


def test_json_without_narrative_field_is_left_alone() -> None:
    assert extract_narrative('{"title": "Chapter 1"}') == '{"title": "Chapter 1"}'
    assert extract_narrative('{"story": 42}') == '{"story": 42}'


def test_double_encoded_reply_is_fully_unwrapped() -> None:
    raw = '{"story": "{\\"story\\": \\"inner text\\"}"}'
    assert extract_narrative(raw) == "inner text"


def test_none_becomes_empty_text() -> None:
    assert extract_narrative(None) == ""


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "{",
        "```",
        '{"story": "',
        '{"story": "a\\',
        "Plain narration with a { brace",
        '{"nextStory": "<Narration>\\nA\\n</Narration>"}',
        '```json\n{"story": "&lt;b&gt;bold&lt;/b&gt;"}\n```',
        '{"story": "{\\"nextStory\\": \\"x\\"}"}',
        '{story: "unquoted", }',
    ],
)
def test_extraction_is_idempotent(raw: str) -> None:
    once = extract_narrative(raw)
    assert extract_narrative(once) == once
