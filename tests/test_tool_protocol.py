import json
from itertools import count

from claude_max_proxy.translate.tool_protocol import (
    EMPTY_REPLY_FILLER,
    FUNCTION_CALLS_OPEN,
    ToolCallRecord,
    ToolDefinition,
    build_context_block,
    decode_reply,
    render_assistant_turn,
    render_invocations,
)


def sequential_ids():
    counter = count(1)
    return lambda: f"call_{next(counter)}"


def test_decode_scenario_reply() -> None:
    text = (
        "I'll check.<function_calls><invoke name=\"get_weather\">"
        "<parameter name=\"city\">Tokyo</parameter></invoke></function_calls>"
    )
    decoded = decode_reply(text)

    assert decoded.content == "I'll check."
    assert len(decoded.tool_calls) == 1
    assert decoded.tool_calls[0].name == "get_weather"
    assert json.loads(decoded.tool_calls[0].arguments) == {"city": "Tokyo"}
    assert decoded.tool_calls[0].arguments == '{"city":"Tokyo"}'
    assert decoded.finish_reason == "tool_calls"


def test_tool_only_reply_has_absent_content() -> None:
    text = '<function_calls>\n<invoke name="ls">\n</invoke>\n</function_calls>'
    decoded = decode_reply(text)

    assert decoded.content is None
    assert len(decoded.tool_calls) == 1
    assert decoded.tool_calls[0].arguments == "{}"
    assert decoded.finish_reason == "tool_calls"


def test_empty_reply_gets_filler() -> None:
    decoded = decode_reply("   \n")
    assert decoded.content == EMPTY_REPLY_FILLER
    assert decoded.tool_calls == []
    assert decoded.finish_reason == "stop"


def test_plain_reply_is_trimmed() -> None:
    decoded = decode_reply("  hello there \n")
    assert decoded.content == "hello there"
    assert decoded.finish_reason == "stop"


def test_multiple_blocks_and_invokes_are_all_stripped() -> None:
    text = (
        "First.\n"
        '<function_calls><invoke name="a"><parameter name="x">1</parameter></invoke>'
        '<invoke name="b"></invoke></function_calls>\n'
        "Middle.\n"
        '<function_calls><invoke name="c"><parameter name="y">2</parameter></invoke></function_calls>'
        "\nLast."
    )
    decoded = decode_reply(text, id_factory=sequential_ids())

    assert [call.name for call in decoded.tool_calls] == ["a", "b", "c"]
    assert [call.id for call in decoded.tool_calls] == ["call_1", "call_2", "call_3"]
    assert FUNCTION_CALLS_OPEN not in decoded.content
    assert "invoke" not in decoded.content
    assert decoded.content.startswith("First.")
    assert "Middle." in decoded.content
    assert decoded.content.endswith("Last.")


def test_repeated_parameter_is_last_write_wins() -> None:
    text = (
        '<function_calls><invoke name="f">'
        '<parameter name="k">first</parameter><parameter name="k">second</parameter>'
        "</invoke></function_calls>"
    )
    decoded = decode_reply(text)
    assert json.loads(decoded.tool_calls[0].arguments) == {"k": "second"}


def test_parameter_values_are_opaque_text() -> None:
    text = (
        '<function_calls><invoke name="write">'
        '<parameter name="body">  <b>bold</b> & 42 </parameter>'
        '<parameter name="count">42</parameter>'
        "</invoke></function_calls>"
    )
    arguments = json.loads(decode_reply(text).tool_calls[0].arguments)
    assert arguments == {"body": "  <b>bold</b> & 42 ", "count": "42"}


def test_unterminated_block_is_left_visible_and_decoding_continues() -> None:
    text = 'Before <function_calls><invoke name="x"> never closed'
    decoded = decode_reply(text)
    assert decoded.tool_calls == []
    assert decoded.content == text.strip()


def test_unknown_element_inside_block_is_skipped() -> None:
    text = (
        "<function_calls><thinking>hmm</thinking>"
        '<invoke name="ok"><junk/><parameter name="a">b</parameter></invoke>'
        "</function_calls>"
    )
    decoded = decode_reply(text)
    assert len(decoded.tool_calls) == 1
    assert json.loads(decoded.tool_calls[0].arguments) == {"a": "b"}
    assert decoded.content is None


def test_unterminated_invoke_is_dropped_but_block_is_stripped() -> None:
    text = (
        'Hi <function_calls><invoke name="good"></invoke>'
        '<invoke name="bad"><parameter name="p">v</parameter></function_calls>'
    )
    decoded = decode_reply(text)
    assert [call.name for call in decoded.tool_calls] == ["good"]
    assert decoded.content == "Hi"


def test_undeclared_tool_name_passes_through() -> None:
    text = '<function_calls><invoke name="not_declared"></invoke></function_calls>'
    decoded = decode_reply(text)
    assert decoded.tool_calls[0].name == "not_declared"


def test_single_quoted_and_spaced_attributes_are_accepted() -> None:
    text = "<function_calls><invoke  name = 'lookup' ><parameter name='q'>x</parameter></invoke></function_calls>"
    decoded = decode_reply(text)
    assert decoded.tool_calls[0].name == "lookup"
    assert json.loads(decoded.tool_calls[0].arguments) == {"q": "x"}


def test_spliced_block_after_stripping_is_removed_too() -> None:
    text = "<function_<function_calls></function_calls>calls></function_calls>tail"
    decoded = decode_reply(text)
    assert FUNCTION_CALLS_OPEN not in decoded.content
    assert decoded.content == "tail"


def test_tool_call_ids_are_unique_even_with_colliding_factory() -> None:
    ids = iter(["call_dup", "call_dup", "call_other"])
    text = '<function_calls><invoke name="a"></invoke><invoke name="b"></invoke></function_calls>'
    decoded = decode_reply(text, id_factory=lambda: next(ids))
    assert [call.id for call in decoded.tool_calls] == ["call_dup", "call_other"]


def test_render_invocations_is_deterministic() -> None:
    record = ToolCallRecord(id="call_1", name="get_weather", arguments='{"city":"Tokyo","days":3}')
    first = render_invocations([record])
    second = render_invocations([ToolCallRecord(id="call_9", name="get_weather", arguments='{"city":"Tokyo","days":3}')])

    assert first == second
    assert first == (
        "<function_calls>\n"
        '<invoke name="get_weather">\n'
        '<parameter name="city">Tokyo</parameter>\n'
        '<parameter name="days">3</parameter>\n'
        "</invoke>\n"
        "</function_calls>"
    )


def test_encode_then_decode_preserves_name_and_arguments() -> None:
    record = ToolCallRecord(
        id="call_1",
        name="search",
        arguments=json.dumps({"query": "ramen near Shibuya", "lang": "ja", "note": "line1\nline2"}),
    )
    decoded = decode_reply(render_invocations([record]))

    assert decoded.tool_calls[0].name == "search"
    assert json.loads(decoded.tool_calls[0].arguments) == json.loads(record.arguments)


def test_render_assistant_turn_keeps_visible_text_first() -> None:
    record = ToolCallRecord(id="call_1", name="ls", arguments="{}")
    assert render_assistant_turn("Listing.", [record]).startswith("Listing.\n\n<function_calls>")
    assert render_assistant_turn("", [record]).startswith("<function_calls>")


def test_invalid_arguments_replay_without_parameters() -> None:
    record = ToolCallRecord(id="call_1", name="broken", arguments="{not json")
    markup = render_invocations([record])
    assert '<invoke name="broken">' in markup
    assert "<parameter" not in markup


def test_context_block_contains_identity_and_tools() -> None:
    context = build_context_block(
        ["You are a helpful travel agent."],
        [
            ToolDefinition(
                name="get_weather",
                description="Get the weather",
                parameters={"type": "object", "properties": {"city": {"type": "string"}}},
            ),
            ToolDefinition(name="noop"),
        ],
    )
    assert context.startswith("[Assistant Identity]\nYou are a helpful travel agent.\n\n")
    assert "[Available Tools]\n- get_weather: Get the weather" in context
    assert '"city"' in context
    assert "- noop: No description" in context
    assert "[Tool Usage]" in context
    assert "<function_calls>" in context


def test_context_block_is_empty_without_system_or_tools() -> None:
    assert build_context_block([], []) == ""


def test_names_with_double_quotes_survive_replay() -> None:
    text = "<function_calls><invoke name='say\"hi'><parameter name='k\"q'>v</parameter></invoke></function_calls>"
    record = decode_reply(text).tool_calls[0]
    assert record.name == 'say"hi'

    markup = render_invocations([record])
    assert "<invoke name='say\"hi'>" in markup
    replayed = decode_reply(markup)

    assert [call.name for call in replayed.tool_calls] == ['say"hi']
    assert json.loads(replayed.tool_calls[0].arguments) == {'k"q': "v"}


def test_invoke_left_open_before_next_invoke_is_dropped() -> None:
    text = (
        '<function_calls><invoke name="first"><parameter name="a">1</parameter>'
        '<invoke name="second"><parameter name="b">2</parameter></invoke></function_calls>'
    )
    decoded = decode_reply(text)

    assert [call.name for call in decoded.tool_calls] == ["second"]
    assert json.loads(decoded.tool_calls[0].arguments) == {"b": "2"}
