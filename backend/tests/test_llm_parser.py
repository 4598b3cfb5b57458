import pytest

from llm_client import extract_chat_message_text, parse_json_from_response


def test_plain_json_parses_directly() -> None:
    assert parse_json_from_response('{"decision": "skip"}') == {"decision": "skip"}
    assert parse_json_from_response("  [1, 2]  ") == [1, 2]


def test_fenced_json_block() -> None:
    text = 'Here you go:\n```json\n{"decision": "create", "reason": "new"}\n```\nThanks.'
    assert parse_json_from_response(text) == {"decision": "create", "reason": "new"}


def test_fence_without_language_tag() -> None:
    text = '```\n{"memories": []}\n```'
    assert parse_json_from_response(text) == {"memories": []}


def test_json_surrounded_by_prose() -> None:
    text = 'Sure. {"decision": "merge", "match_index": 2} Hope that helps.'
    assert parse_json_from_response(text) == {"decision": "merge", "match_index": 2}


def test_braces_and_escaped_quotes_inside_strings() -> None:
    text = 'Answer: {"reason": "uses {curly} and \\"quoted\\" text", "decision": "skip"} done'
    parsed = parse_json_from_response(text)
    assert parsed == {"reason": 'uses {curly} and "quoted" text', "decision": "skip"}


def test_skips_invalid_span_and_takes_next_valid_one() -> None:
    text = 'draft {not json at all} final {"decision": "create"}'
    assert parse_json_from_response(text) == {"decision": "create"}


def test_nested_objects_return_outermost_valid_span() -> None:
    text = 'x {"a": {"b": 1}} y'
    assert parse_json_from_response(text) == {"a": {"b": 1}}


@pytest.mark.parametrize(
    "text",
    ["", "   ", "no json here", "{unbalanced", "{'single': 'quotes'}", "{"],
)
def test_unparseable_returns_none(text: str) -> None:
    assert parse_json_from_response(text) is None


def test_extract_chat_message_text_handles_string_and_parts() -> None:
    assert (
        extract_chat_message_text({"choices": [{"message": {"content": "  hi  "}}]}) == "hi"
    )
    payload = {
        "choices": [
            {"message": {"content": [{"type": "text", "text": "a"}, {"text": " b "}, "junk"]}}
        ]
    }
    assert extract_chat_message_text(payload) == "a\nb"
    assert extract_chat_message_text({"choices": []}) == ""
    assert extract_chat_message_text({}) == ""
