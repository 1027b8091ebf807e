import pytest

from models.errors import ParseError
from models.json_recovery import extract_balanced_json, parse_strict_json, recover_json, strip_line_comments


def test_reasoning_block_and_fence_are_removed():
    raw = '<think>first {weigh} options</think>\n```json\n{"action": "BUY"}\n```'
    text, parsed = recover_json(raw)
    assert parsed == {"action": "BUY"}
    assert text == '{"action": "BUY"}'


def test_prose_around_json_is_sliced_off():
    raw = 'Here is my answer: {"note": "use } carefully", "n": [1, 2]} hope it helps'
    _, parsed = recover_json(raw)
    assert parsed == {"note": "use } carefully", "n": [1, 2]}


def test_line_comments_outside_strings_are_dropped():
    raw = '{\n  "url": "https://example.com", // source\n  "ok": true\n}'
    _, parsed = recover_json(raw)
    assert parsed == {"url": "https://example.com", "ok": True}


def test_unrecoverable_output_raises_parse_error():
    with pytest.raises(ParseError) as excinfo:
        recover_json("I could not decide.", provider="openrouter")
    assert excinfo.value.provider == "openrouter"


def test_extract_balanced_json_handles_escapes():
    text = 'x {"quote": "say \\"}\\" now"} y'
    assert extract_balanced_json(text) == '{"quote": "say \\"}\\" now"}'
    assert extract_balanced_json("no json here") is None
    assert extract_balanced_json('{"open": [1, 2}') is None


def test_strip_line_comments_keeps_string_slashes():
    assert strip_line_comments('{"a": "//x"} // trailing') == '{"a": "//x"} '


def test_parse_strict_json_does_not_repair():
    with pytest.raises(ParseError):
        parse_strict_json('```json\n{"a": 1}\n```')
    assert parse_strict_json(' {"a": 1} ')[1] == {"a": 1}
