import json

from agent_dispatch.utils.output_normalizer import (
    BLOCK_VARIANTS,
    RESULT_EMPTY_MESSAGE,
    RESULT_ERROR_MESSAGE,
    RESULT_SUCCESS_MESSAGE,
    extract_last_non_empty_line,
    extract_provider_session_id,
    extract_structured,
    match_block,
    normalize,
)


def test_empty_and_whitespace_input():
    assert normalize("").content == ""
    assert normalize("   \n\t ").content == ""
    assert normalize(None).content == ""


def test_plain_text_is_returned_verbatim():
    assert normalize("  Just some prose.\nSecond line.  ").content == "Just some prose.\nSecond line."


def test_response_field():
    result = normalize('{"response":"Tech check markdown response"}')
    assert result.content == "Tech check markdown response"


def test_success_envelope_without_text_uses_fixed_message():
    result = normalize('{"type":"result","subtype":"success","result":""}')
    assert result.content == RESULT_SUCCESS_MESSAGE
    assert "{" not in result.content


def test_error_envelope_appends_error_field():
    result = normalize('{"type":"result","subtype":"error","error":"rate limited"}')
    assert result.content == f"{RESULT_ERROR_MESSAGE} rate limited"

    bare = normalize('{"type":"result","subtype":"error"}')
    assert bare.content == RESULT_ERROR_MESSAGE


def test_other_envelope_subtype_uses_generic_message():
    result = normalize('{"type":"result","subtype":"error_max_turns","usage":{"input_tokens":5}}')
    assert result.content == RESULT_EMPTY_MESSAGE
    assert "input_tokens" not in result.content
    assert result.metadata["usage"] == {"input_tokens": 5}


def test_unknown_object_without_text_is_pretty_printed():
    result = normalize('{"foo": 1}')
    assert result.content == json.dumps({"foo": 1}, indent=2)


def test_precedence_prefers_response_over_later_fields():
    block = {"text": "text", "content": "content", "output": "output", "response": "response"}
    assert match_block(block) == ("response", "response")
    assert [name for name, _ in BLOCK_VARIANTS][:3] == ["response", "output", "message"]


def test_blank_field_falls_through_to_next_variant():
    assert match_block({"response": "  ", "output": "used"}) == ("output", "used")


def test_nested_json_string_result_is_renormalized():
    inner = json.dumps({"response": "inner answer"})
    result = normalize(json.dumps({"type": "result", "subtype": "success", "result": inner}))
    assert result.content == "inner answer"


def test_message_object_with_content_blocks():
    payload = {
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": "first"}, {"type": "text", "text": "second"}]},
    }
    assert normalize(json.dumps(payload)).content == "first\nsecond"


def test_array_of_blocks_joined_with_blank_line_skipping_empty():
    payload = [{"text": "alpha"}, {"type": "tool_use", "id": "x"}, {"output": "beta"}]
    result = normalize(json.dumps(payload))
    assert result.content == "alpha\n\nbeta"
    assert result.metadata == {"block_count": 3, "types": ["tool_use"]}


def test_gemini_candidates():
    payload = {
        "candidates": [
            {"content": {"parts": [{"text": "one"}, {"text": "two"}]}},
            {"content": {"parts": [{"text": "three"}]}},
        ]
    }
    assert normalize(json.dumps(payload)).content == "one\ntwo\n\nthree"


def test_ndjson_stream_prefers_final_result():
    lines = [
        json.dumps({"type": "system", "subtype": "init", "session_id": "abc"}),
        "not json at all",
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "thinking"}]}}),
        json.dumps({"type": "result", "subtype": "success", "result": "final answer"}),
    ]
    assert normalize("\n".join(lines)).content == "final answer"


def test_ndjson_without_result_joins_blocks():
    lines = [json.dumps({"text": "a"}), "noise", json.dumps({"text": "b"})]
    assert normalize("\n".join(lines)).content == "a\n\nb"


def test_ndjson_tool_only_stream_uses_success_message():
    lines = [
        json.dumps({"type": "system", "subtype": "init", "session_id": "abc"}),
        json.dumps(
            {
                "type": "assistant",
                "message": {"content": [{"type": "tool_use", "name": "Edit", "input": {}}]},
            }
        ),
        json.dumps({"type": "result", "subtype": "success", "result": ""}),
    ]
    result = normalize("\n".join(lines))
    assert result.content == RESULT_SUCCESS_MESSAGE
    assert result.metadata == {"type": "result"}


def test_ndjson_tool_results_never_become_content():
    lines = [
        json.dumps({"type": "system", "subtype": "init", "session_id": "abc"}),
        json.dumps(
            {
                "type": "user",
                "message": {
                    "content": [
                        {"type": "tool_result", "content": "SECRET=1 from .env", "tool_use_id": "t1"}
                    ]
                },
            }
        ),
        json.dumps({"type": "result", "subtype": "success", "result": ""}),
    ]
    content = normalize("\n".join(lines)).content
    assert "SECRET" not in content
    assert content == RESULT_SUCCESS_MESSAGE


def test_prose_with_embedded_json_line_is_kept():
    raw = 'I updated the config.\n{"debug": true}\nAll tests pass.'
    assert normalize(raw).content == raw


def test_control_characters_and_ansi_are_removed():
    raw = json.dumps({"response": "\x1b[31mred\x1b[0m text\x07 here\r\nnext"})
    assert normalize(raw).content == "red text here\nnext"


def test_extract_structured_direct_object():
    assert extract_structured('{"project": {"name": "x"}}') == {"project": {"name": "x"}}


def test_extract_structured_from_fenced_block_inside_envelope():
    text = 'Here you go:\n```json\n{"epics": [1, 2]}\n```\nThanks'
    envelope = json.dumps({"type": "result", "subtype": "success", "result": text})
    assert extract_structured(envelope) == {"epics": [1, 2]}


def test_extract_structured_project_object_near_end():
    text = 'Some prose first.\n{"project": {"name": "Demo"}, "epics": []}'
    assert extract_structured(text) == {"project": {"name": "Demo"}, "epics": []}


def test_extract_structured_array_fallback():
    assert extract_structured("Results: [1, 2, 3] done") == [1, 2, 3]


def test_extract_structured_rejects_envelope_and_returns_none():
    assert extract_structured('{"type":"result","subtype":"success","result":""}') is None
    assert extract_structured("no json here") is None
    assert extract_structured("") is None


def test_extract_provider_session_id_forms():
    assert extract_provider_session_id('{"session_id": "top"}') == "top"
    assert extract_provider_session_id('{"sessionId": "camel"}') == "camel"
    assert extract_provider_session_id('{"session": {"id": "nested"}}') == "nested"
    assert extract_provider_session_id('{"data": [{"x": 1}, {"session_id": "deep"}]}') == "deep"


def test_extract_provider_session_id_prefers_top_level():
    payload = {"meta": {"session_id": "nested"}, "session_id": "top"}
    assert extract_provider_session_id(json.dumps(payload)) == "top"


def test_extract_provider_session_id_across_ndjson_lines():
    text = "banner line\n" + json.dumps({"type": "init"}) + "\n" + json.dumps({"session_id": "line-two"})
    assert extract_provider_session_id(text) == "line-two"
    assert extract_provider_session_id("plain text") is None


def test_extract_last_non_empty_line():
    assert extract_last_non_empty_line("line one\n\n   final output line   \n") == "final output line"
    assert extract_last_non_empty_line("   \n  ") is None
    assert extract_last_non_empty_line("abcdefghij", max_length=6) == "abc..."
