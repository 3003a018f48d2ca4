import pytest

from claude_max_proxy.errors import MalformedRequest
from claude_max_proxy.translate.openai_to_anthropic import (
    REQUIRED_SYSTEM_PROMPT,
    TOOL_CALL_PLACEHOLDER,
    UpstreamTurn,
    build_upstream_payload,
    convert_messages,
    merge_adjacent_turns,
    parse_tool_definitions,
    translate_chat_request,
)

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Get current weather for a city.",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
    },
}


def test_scenario_first_user_turn_carries_context_and_text() -> None:
    result = translate_chat_request(
        {
            "model": "claude-sonnet-4",
            "messages": [{"role": "user", "content": "Check weather in Tokyo"}],
            "tools": [WEATHER_TOOL],
        }
    )

    assert result.system == REQUIRED_SYSTEM_PROMPT
    assert len(result.turns) == 1
    first = result.turns[0]
    assert first.role == "user"
    assert "[Available Tools]" in first.content
    assert "- get_weather: Get current weather for a city." in first.content
    assert "<function_calls>" in first.content
    assert first.content.endswith("[User Message]\nCheck weather in Tokyo")


def test_system_messages_never_reach_system_field() -> None:
    result = convert_messages(
        [
            {"role": "system", "content": "Be terse. " * 500},
            {"role": "developer", "content": "Speak French."},
            {"role": "user", "content": "hi"},
        ]
    )
    payload = build_upstream_payload(result, model="claude-sonnet-4-5-20250929", max_tokens=100)

    assert payload["system"] == REQUIRED_SYSTEM_PROMPT
    assert result.turns[0].content.startswith("[Assistant Identity]\nBe terse.")
    assert "Speak French." in result.turns[0].content
    assert result.turns[0].content.endswith("[User Message]\nhi")


def test_context_is_injected_only_once() -> None:
    result = convert_messages(
        [
            {"role": "system", "content": "Identity"},
            {"role": "user", "content": "one"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "two"},
        ],
        parse_tool_definitions([WEATHER_TOOL]),
    )
    assert "[Assistant Identity]" in result.turns[0].content
    assert result.turns[2].content == "two"


def test_consecutive_same_role_turns_are_merged() -> None:
    result = convert_messages(
        [
            {"role": "user", "content": "a"},
            {"role": "user", "content": "b"},
            {"role": "assistant", "content": "c"},
            {"role": "tool", "tool_call_id": "call_1", "content": "result"},
            {"role": "user", "content": "d"},
        ]
    )
    roles = [turn.role for turn in result.turns]
    assert roles == ["user", "assistant", "user"]
    assert result.turns[0].content == "a\n\nb"
    assert result.turns[2].content == "[Tool Result: call_1]\nresult\n\nd"
    for previous, current in zip(result.turns, result.turns[1:]):
        assert previous.role != current.role


def test_merge_adjacent_turns_handles_long_runs() -> None:
    merged = merge_adjacent_turns([UpstreamTurn("user", str(i)) for i in range(4)])
    assert merged == [UpstreamTurn("user", "0\n\n1\n\n2\n\n3")]


def test_assistant_tool_calls_replay_as_markup() -> None:
    result = convert_messages(
        [
            {"role": "user", "content": "Weather in Tokyo?"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "get_weather", "arguments": '{"city":"Tokyo"}'},
                    }
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": "Sunny, 21C"},
            {"role": "user", "content": "Thanks, and tomorrow?"},
        ],
        parse_tool_definitions([WEATHER_TOOL]),
    )
    assistant = result.turns[1]
    assert assistant.role == "assistant"
    assert '<invoke name="get_weather">' in assistant.content
    assert '<parameter name="city">Tokyo</parameter>' in assistant.content
    assert TOOL_CALL_PLACEHOLDER not in assistant.content
    assert result.turns[2].content == "[Tool Result: call_1]\nSunny, 21C\n\nThanks, and tomorrow?"


def test_replayed_markup_is_identical_across_requests() -> None:
    history = [
        {"role": "user", "content": "hi"},
        {
            "role": "assistant",
            "content": "Checking.",
            "tool_calls": [{"id": "call_1", "function": {"name": "f", "arguments": {"a": 1}}}],
        },
    ]
    first = convert_messages(history).turns[1].content
    second = convert_messages(history).turns[1].content
    assert first == second
    assert first.startswith("Checking.\n\n<function_calls>")
    assert '<parameter name="a">1</parameter>' in first


def test_assistant_with_unusable_tool_calls_gets_placeholder() -> None:
    result = convert_messages(
        [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "", "tool_calls": [{"id": "call_1"}]},
        ]
    )
    assert result.turns[1].content == TOOL_CALL_PLACEHOLDER
    assert result.warnings


def test_empty_messages_are_skipped_and_unknown_roles_dropped() -> None:
    result = convert_messages(
        [
            {"role": "user", "content": ""},
            {"role": "narrator", "content": "ignored"},
            {"role": "user", "content": "real"},
            {"role": "assistant", "content": "   "},
        ]
    )
    assert result.turns == [UpstreamTurn("user", "real")]
    assert any("narrator" in warning for warning in result.warnings)


def test_multipart_content_keeps_text_parts_only() -> None:
    result = convert_messages(
        [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "look at"},
                    {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
                    {"type": "text", "text": "this"},
                ],
            }
        ]
    )
    assert result.turns[0].content == "look at\nthis"


def test_empty_message_list_yields_empty_turns() -> None:
    result = translate_chat_request({"messages": []})
    assert result.turns == []
    assert result.system == REQUIRED_SYSTEM_PROMPT


def test_missing_messages_is_rejected() -> None:
    with pytest.raises(MalformedRequest) as excinfo:
        translate_chat_request({"model": "x"})
    assert excinfo.value.status_code == 400
    assert excinfo.value.param == "messages"


def test_tool_without_name_is_rejected() -> None:
    with pytest.raises(MalformedRequest):
        parse_tool_definitions([{"type": "function", "function": {"description": "no name"}}])


def test_flat_tool_definitions_are_accepted() -> None:
    tools = parse_tool_definitions([{"name": "flat", "parameters": {"type": "object"}}])
    assert tools[0].name == "flat"
    assert tools[0].description is None


def test_build_upstream_payload_fields() -> None:
    conversation = convert_messages([{"role": "user", "content": "hi"}])
    payload = build_upstream_payload(
        conversation,
        model="claude-3-5-haiku-20241022",
        max_tokens=256,
        temperature=0.2,
        stream=True,
    )
    assert payload == {
        "model": "claude-3-5-haiku-20241022",
        "system": REQUIRED_SYSTEM_PROMPT,
        "messages": [{"role": "user", "content": "hi"}],
        "max_tokens": 256,
        "temperature": 0.2,
        "stream": True,
    }


def test_tool_message_without_call_id_is_flagged() -> None:
    result = convert_messages(
        [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "calling"},
            {"role": "tool", "content": "42"},
        ]
    )
    assert result.turns[2].content == "[Tool Result: ]\n42"
    assert "None" not in result.turns[2].content
    assert any("tool_call_id" in warning for warning in result.warnings)
