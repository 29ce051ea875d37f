"""Tests for transcript extraction."""

from topic_sync.transcript import extract_messages, extract_transcript, html_to_text


class TestHtmlToText:
    def test_strips_tags_and_decodes_entities(self):
        assert html_to_text("<p>Fish &amp; chips&nbsp;please</p>") == "Fish & chips please"

    def test_line_breaks_collapse_to_single_line(self):
        assert html_to_text("<p>Line one</p><p>Line two<br/>Line three</p>") == "Line one Line two Line three"

    def test_removes_script_and_style(self):
        body = "<style>p {color: red}</style><p>Hi</p><script>alert('x')</script>"
        assert html_to_text(body) == "Hi"

    def test_image_only_body(self):
        assert html_to_text('<p><img src="https://x/y.png"></p>') == "[IMAGE]"

    def test_image_with_text_keeps_text(self):
        assert html_to_text('<p>See this <img src="a.png"></p>') == "See this"

    def test_empty_and_none(self):
        assert html_to_text(None) == ""
        assert html_to_text("") == ""
        assert html_to_text("<p> </p>") == ""


class TestExtractTranscript:
    def test_user_and_agent_roles(self):
        conversation = {
            "source": {"body": "<p>Hello</p>"},
            "conversation_parts": {
                "conversation_parts": [
                    {"part_type": "comment", "author": {"type": "admin"}, "body": "<b>Hi!</b>"},
                ]
            },
        }
        assert extract_transcript(conversation) == "USER: Hello\nAGENT: Hi!"

    def test_drops_notes_bots_and_blank_parts(self):
        conversation = {
            "source": {"body": "Where is my payout?"},
            "conversation_parts": {
                "conversation_parts": [
                    {"part_type": "note", "author": {"type": "admin"}, "body": "internal"},
                    {"part_type": "comment", "author": {"type": "bot"}, "body": "Auto reply"},
                    {"part_type": "assignment", "author": {"type": "admin"}, "body": None},
                    {"part_type": "comment", "author": {"type": "user"}, "body": "<p> </p>"},
                    {"part_type": "comment", "author": {"type": "admin"}, "body": "Checking now"},
                    {"part_type": "comment", "author": {"type": "user"}, "body": "Thanks"},
                ]
            },
        }
        assert extract_transcript(conversation) == (
            "USER: Where is my payout?\nAGENT: Checking now\nUSER: Thanks"
        )

    def test_keeps_payload_order(self):
        conversation = {
            "source": {"body": "first"},
            "conversation_parts": {
                "conversation_parts": [
                    {"part_type": "comment", "author": {"type": "user"}, "body": "second", "created_at": 30},
                    {"part_type": "comment", "author": {"type": "admin"}, "body": "third", "created_at": 20},
                ]
            },
        }
        assert [text for _, text in extract_messages(conversation)] == ["first", "second", "third"]

    def test_multiline_message_is_one_line(self):
        conversation = {"source": {"body": "<p>one</p>\n<p>two</p>"}}
        assert extract_transcript(conversation) == "USER: one two"

    def test_empty_inputs(self):
        assert extract_transcript(None) == ""
        assert extract_transcript({}) == ""
        assert extract_transcript({"source": {}, "conversation_parts": {"conversation_parts": []}}) == ""

    def test_missing_source_body_starts_with_parts(self):
        conversation = {
            "source": {"body": None},
            "conversation_parts": {
                "conversation_parts": [
                    {"part_type": "comment", "author": {"type": "admin"}, "body": "Hello?"},
                ]
            },
        }
        assert extract_transcript(conversation) == "AGENT: Hello?"
