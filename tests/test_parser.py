"""Tests for the assistant message parser."""

from toolhub.parser import MessageParser, TextBlock, ToolUse, parse_assistant_message


class TestParseAssistantMessage:
    def test_closed_tool_is_final(self) -> None:
        blocks = parse_assistant_message("<tool>\n<p>value</p>\n</tool>")

        assert blocks == [ToolUse("tool", {"p": "value"}, partial=False)]

    def test_unclosed_tool_is_partial_with_params_so_far(self) -> None:
        blocks = parse_assistant_message("<tool>\n<p>value</p>\n")

        assert blocks == [ToolUse("tool", {"p": "value"}, partial=True)]

    def test_unclosed_tool_stays_partial_when_stream_ends(self) -> None:
        blocks = parse_assistant_message("<tool>\n<p>value</p>", final=True)

        assert blocks[-1].partial

    def test_text_and_tools_interleave_in_order(self) -> None:
        blocks = parse_assistant_message("hello\n<t>\n<a>1</a>\n</t>\nworld")

        assert blocks == [
            TextBlock("hello"),
            ToolUse("t", {"a": "1"}),
            TextBlock("world"),
        ]

    def test_trailing_text_is_partial_while_streaming(self) -> None:
        blocks = parse_assistant_message("Thinking about it", final=False)

        assert blocks == [TextBlock("Thinking about it", partial=True)]

    def test_consecutive_text_lines_merge(self) -> None:
        blocks = parse_assistant_message("first line\nsecond line\n\nthird line")

        assert blocks == [TextBlock("first line\nsecond line\n\nthird line")]

    def test_whitespace_only_text_is_dropped(self) -> None:
        blocks = parse_assistant_message("\n\n<t>\n</t>\n\n")

        assert blocks == [ToolUse("t", {})]

    def test_multiline_param_keeps_inner_newlines(self) -> None:
        text = (
            "<write_to_file>\n"
            "<path>notes.txt</path>\n"
            "<content>\n"
            "line one\n"
            "  line two\n"
            "</content>\n"
            "</write_to_file>"
        )

        [block] = parse_assistant_message(text)

        assert block.params == {"path": "notes.txt", "content": "line one\n  line two"}

    def test_param_value_may_start_on_the_open_tag_line(self) -> None:
        [block] = parse_assistant_message("<t>\n<body>first\nsecond</body>\n</t>")

        assert block.params["body"] == "first\nsecond"

    def test_params_keep_their_order(self) -> None:
        [block] = parse_assistant_message("<t>\n<b>2</b>\n<a>1</a>\n<c>3</c>\n</t>")

        assert list(block.params) == ["b", "a", "c"]

    def test_unclosed_param_is_reported_in_partial_tool(self) -> None:
        [block] = parse_assistant_message("<t>\n<a>half a val")

        assert block == ToolUse("t", {"a": "half a val"}, partial=True)

    def test_closing_tag_for_other_name_does_not_close_tool(self) -> None:
        [block] = parse_assistant_message("<t>\n</other>\n")

        assert block.name == "t"
        assert block.partial

    def test_inline_tags_in_prose_are_text(self) -> None:
        blocks = parse_assistant_message("Wrap it in <b>bold</b> please.")

        assert blocks == [TextBlock("Wrap it in <b>bold</b> please.")]

    def test_param_like_lines_inside_a_param_are_content(self) -> None:
        text = "<t>\n<content>\n<tag>\n</tag>\n</content>\n</t>"

        [block] = parse_assistant_message(text)

        assert block.params == {"content": "<tag>\n</tag>"}

    def test_only_the_last_block_can_be_partial(self) -> None:
        blocks = parse_assistant_message("a\n<t>\n</t>\nb\n<u>\n<x>1</x>", final=False)

        assert [b.partial for b in blocks] == [False, False, False, True]

    def test_empty_input_has_no_blocks(self) -> None:
        assert parse_assistant_message("") == []


class TestMessageParser:
    MESSAGE = (
        "Let me look at the file.\n"
        "<read_file>\n"
        "<path>src/app.py</path>\n"
        "</read_file>\n"
    )

    def test_char_by_char_stream_reports_each_block_once(self) -> None:
        parser = MessageParser()
        reported = []

        for ch in self.MESSAGE:
            reported.extend(parser.feed(ch))
        reported.extend(parser.finish())

        assert reported == [
            TextBlock("Let me look at the file."),
            ToolUse("read_file", {"path": "src/app.py"}),
        ]

    def test_tool_is_not_final_until_closing_line_completes(self) -> None:
        parser = MessageParser()

        parser.feed("<read_file>\n<path>a.py</path>\n</read_fi")
        assert parser.partial_block == ToolUse("read_file", {"path": "a.py"}, partial=True)

        assert parser.feed("le>") == []
        assert parser.feed("\n") == [ToolUse("read_file", {"path": "a.py"})]

    def test_unterminated_closing_line_is_final_at_finish(self) -> None:
        parser = MessageParser()

        assert parser.feed("<t>\n<a>1</a>\n</t>") == []

        assert parser.finish() == [ToolUse("t", {"a": "1"})]

    def test_text_is_reported_when_a_tool_starts(self) -> None:
        parser = MessageParser()

        assert parser.feed("Working on it.\n") == []
        assert parser.feed("<t>\n") == [TextBlock("Working on it.")]

    def test_trailing_text_is_final_only_at_finish(self) -> None:
        parser = MessageParser()

        assert parser.feed("All done.\nNothing else") == []
        assert parser.partial_block == TextBlock("All done.\nNothing else", partial=True)

        assert parser.finish() == [TextBlock("All done.\nNothing else")]
        assert parser.partial_block is None

    def test_unclosed_tool_is_never_reported(self) -> None:
        parser = MessageParser()

        parser.feed("<t>\n<a>1</a>\n")

        assert parser.finish() == []
        assert parser.partial_block == ToolUse("t", {"a": "1"}, partial=True)

    def test_blocks_reflect_whole_buffer(self) -> None:
        parser = MessageParser()

        parser.feed("intro\n<t>\n</t>\nout")

        assert [b.type for b in parser.blocks] == ["text", "tool_use", "text"]
        assert parser.buffer == "intro\n<t>\n</t>\nout"
