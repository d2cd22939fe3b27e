import pytest

from jarvis_voice.app.services.audio.stt.stt_utils import (
    FINAL_KEY,
    PARTIAL_KEY,
    extract_hypothesis_text,
    parse_hypothesis,
)
from jarvis_voice.app.services.errors import ParseError


class TestExtractHypothesisText:
    def test_final_text(self):
        assert extract_hypothesis_text('{"text": "turn it up"}', FINAL_KEY) == "turn it up"

    def test_partial_text(self):
        assert extract_hypothesis_text('{"partial": "next"}', PARTIAL_KEY) == "next"

    def test_preferred_key_wins(self):
        payload = '{"text": "final words", "partial": "partial words"}'

        assert extract_hypothesis_text(payload, FINAL_KEY) == "final words"
        assert extract_hypothesis_text(payload, PARTIAL_KEY) == "partial words"

    def test_falls_back_to_other_key(self):
        assert extract_hypothesis_text('{"partial": "hello jarvis"}', FINAL_KEY) == "hello jarvis"
        assert extract_hypothesis_text('{"text": "hello jarvis"}', PARTIAL_KEY) == "hello jarvis"

    def test_blank_preferred_value_falls_back(self):
        assert extract_hypothesis_text('{"text": "  ", "partial": "go back"}', FINAL_KEY) == "go back"

    def test_result_key_used_last(self):
        assert extract_hypothesis_text('{"result": "something"}', FINAL_KEY) == "something"

    def test_empty_result_list_ignored(self):
        assert extract_hypothesis_text('{"result": []}', FINAL_KEY) == ""

    def test_empty_partial(self):
        assert extract_hypothesis_text('{"partial": ""}', PARTIAL_KEY) == ""

    @pytest.mark.parametrize("payload", [None, "", "   "])
    def test_blank_payload(self, payload):
        assert extract_hypothesis_text(payload) == ""

    def test_non_json_returned_trimmed(self):
        assert extract_hypothesis_text("  plain words  ") == "plain words"

    def test_malformed_json_yields_empty(self):
        assert extract_hypothesis_text('{"text": "unterminated}') == ""

    def test_surrounding_whitespace_trimmed(self):
        assert extract_hypothesis_text('  {"text": " play music "}  ') == "play music"


class TestParseHypothesis:
    def test_parses_object(self):
        assert parse_hypothesis('{"text": "hi"}') == {"text": "hi"}

    def test_rejects_malformed(self):
        with pytest.raises(ParseError):
            parse_hypothesis("{not json}")

    def test_rejects_non_object(self):
        with pytest.raises(ParseError):
            parse_hypothesis("[1, 2]")

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_hypothesis("{")
