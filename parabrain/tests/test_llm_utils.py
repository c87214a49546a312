"""Tests for LLM response parsing helpers."""

from parabrain.common.llm_utils import clamp_confidence, parse_llm_json, safe_number


class TestParseLLMJson:
    def test_plain_object(self):
        assert parse_llm_json('{"a": 1}') == {"a": 1}

    def test_fenced_object(self):
        raw = '```json\n{"intent": "TASK_CAPTURE"}\n```'
        assert parse_llm_json(raw) == {"intent": "TASK_CAPTURE"}

    def test_embedded_in_prose(self):
        raw = 'Sure! Here it is: {"ok": true} hope that helps'
        assert parse_llm_json(raw) == {"ok": True}

    def test_non_object_yields_empty(self):
        assert parse_llm_json("[1, 2]") == {}
        assert parse_llm_json("") == {}
        assert parse_llm_json("no json here") == {}


class TestCoercion:
    def test_safe_number(self):
        assert safe_number(3) == 3.0
        assert safe_number("1,250.50") == 1250.5
        assert safe_number("abc") is None
        assert safe_number(True) is None
        assert safe_number(float("nan")) is None

    def test_clamp_confidence(self):
        assert clamp_confidence(1.7) == 1.0
        assert clamp_confidence(-0.2) == 0.0
        assert clamp_confidence("0.8") == 0.8
        assert clamp_confidence(None) == 0.5
        assert clamp_confidence("x", default=0.0) == 0.0
