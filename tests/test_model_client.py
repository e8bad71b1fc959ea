"""Tests for JSON extraction, schema/grounding validation and the model client's retry policy."""
import pytest
from tenacity import wait_none

from config.settings import LLMConfig
from core.errors import ModelResponseError, ModelUnavailableError
from core.model_client import ModelClient, extract_json, parse_output, with_signal_context
from models.schemas import ModerationVerdict, PrioritizerOutput


def _only_known_ids(known):
    def check(output: PrioritizerOutput):
        unknown = [a.recommendation_id for a in output.adjustments if a.recommendation_id not in known]
        return f"unknown ids {unknown}" if unknown else None
    return check


class TestExtractJson:
    def test_plain(self):
        assert extract_json('{"decision": "approve"}') == {"decision": "approve"}

    def test_fenced(self):
        text = 'Here you go:\n```json\n{"adjustments": []}\n```\nLet me know.'
        assert extract_json(text) == {"adjustments": []}

    def test_bare_fence(self):
        assert extract_json("```\n[1, 2]\n```") == [1, 2]

    @pytest.mark.parametrize("text", ["", "I cannot help with that.", "{'single': 'quotes'}"])
    def test_not_json(self, text):
        with pytest.raises(ModelResponseError):
            extract_json(text)


class TestParseOutput:
    def test_schema_mismatch(self):
        with pytest.raises(ModelResponseError, match="ModerationVerdict"):
            parse_output('{"reason": "no decision"}', ModerationVerdict)

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_delta_rejected(self, value):
        text = '{"adjustments": [{"recommendation_id": "r1", "delta_rank": ' + value + '}]}'
        with pytest.raises(ModelResponseError, match="PrioritizerOutput"):
            parse_output(text, PrioritizerOutput)

    def test_grounding(self):
        text = '{"adjustments": [{"recommendation_id": "r9", "delta_rank": 1}]}'
        with pytest.raises(ModelResponseError, match="Grounding validation failed"):
            parse_output(text, PrioritizerOutput, _only_known_ids({"r1"}))
        assert parse_output(text, PrioritizerOutput, _only_known_ids({"r9"})).adjustments[0].delta_rank == 1


class TestModelClient:
    def test_unavailable_without_key(self):
        assert not ModelClient(LLMConfig(api_key="")).available
        assert ModelClient(LLMConfig(api_key="sk-test")).available

    @pytest.mark.asyncio
    async def test_call_without_key_raises_unavailable(self):
        with pytest.raises(ModelUnavailableError):
            await ModelClient(LLMConfig(api_key="")).complete_json("sys", "prompt", ModerationVerdict)

    @pytest.mark.asyncio
    async def test_invalid_answers_are_retried(self, monkeypatch):
        client = ModelClient(LLMConfig(api_key="sk-test"))
        answers = iter(["not json", '{"decision": "flag", "confidence": 0.7}'])
        calls = []

        async def fake_call(system, prompt, max_tokens=None):
            calls.append(prompt)
            return next(answers)

        monkeypatch.setattr(client, "_call", fake_call)
        complete = ModelClient.complete_json.retry_with(wait=wait_none())

        verdict = await complete(client, "sys", "post", ModerationVerdict)

        assert verdict.decision == "flag"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, monkeypatch):
        client = ModelClient(LLMConfig(api_key="sk-test"))
        calls = []

        async def fake_call(system, prompt, max_tokens=None):
            calls.append(prompt)
            return "still not json"

        monkeypatch.setattr(client, "_call", fake_call)
        complete = ModelClient.complete_json.retry_with(wait=wait_none())

        with pytest.raises(ModelResponseError):
            await complete(client, "sys", "post", ModerationVerdict)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_unavailable_is_not_retried(self, monkeypatch):
        client = ModelClient(LLMConfig(api_key="sk-test"))
        calls = []

        async def fake_call(system, prompt, max_tokens=None):
            calls.append(prompt)
            raise ModelUnavailableError("overloaded")

        monkeypatch.setattr(client, "_call", fake_call)
        complete = ModelClient.complete_json.retry_with(wait=wait_none())

        with pytest.raises(ModelUnavailableError):
            await complete(client, "sys", "post", ModerationVerdict)
        assert len(calls) == 1


class TestSignalContextPrompt:
    def test_appends_section(self):
        assert with_signal_context("base", "- tip") == "base\n\n## Cross-Brand Signals\n- tip"

    def test_empty_context_leaves_prompt(self):
        assert with_signal_context("base", "") == "base"
