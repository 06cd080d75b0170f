import json

import pytest

from callcoach.response_parser import ResponseParser, parse_json_object

from .conftest import coach_reply


class TestParseJsonObject:
    def test_code_fences(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_chatter(self):
        assert parse_json_object('Claro! Segue: {"a": {"b": 2}} Espero ter ajudado.') == {"a": {"b": 2}}

    def test_array_is_rejected(self):
        with pytest.raises(ValueError):
            parse_json_object("[1, 2]")


class TestResponseParser:
    def test_valid_reply(self):
        raw = json.dumps(coach_reply(
            "Pergunte quem mais participa da decisão.",
            currentStep=2,
            stageChanged=True,
            nextStep={"action": "Mapear decisores", "question": "Quem mais decide com você?"},
            leadProfile={"type": "rational", "concerns": ["preço"], "interests": [], "buyingSignals": ["perguntou prazo"]},
        ))

        response = ResponseParser().parse(raw)

        assert response.should_skip is False
        assert response.current_step == 2
        assert response.stage_changed is True
        assert response.coaching.content == "Pergunte quem mais participa da decisão."
        assert response.next_step.question == "Quem mais decide com você?"
        assert response.lead_profile.buying_signals == ["perguntou prazo"]

    def test_fenced_reply(self):
        raw = "```json\n" + json.dumps(coach_reply()) + "\n```"
        assert ResponseParser().parse(raw).coaching.type == "tip"

    def test_overlong_content_skips(self):
        response = ResponseParser().parse(json.dumps(coach_reply("x" * 301)))
        assert response.should_skip is True
        assert response.stage_changed is False

    def test_unknown_urgency_skips(self):
        reply = coach_reply()
        reply["coaching"]["urgency"] = "critical"
        assert ResponseParser().parse(json.dumps(reply)).should_skip is True

    def test_missing_current_step_skips(self):
        reply = coach_reply()
        del reply["currentStep"]
        assert ResponseParser().parse(json.dumps(reply)).should_skip is True

    def test_garbage_skips(self):
        for raw in ["", "não consegui analisar", "{broken"]:
            assert ResponseParser().parse(raw).should_skip is True

    def test_skip_result_is_not_shared(self):
        first = ResponseParser().parse("nope")
        first.current_step = 9
        assert ResponseParser().parse("nope").current_step == 1
