from __future__ import annotations

import json

from click.testing import CliRunner

from nyaagent.agent.events import AgentEvent
from nyaagent.cli.main import cli, final_text
from nyaagent.providers.base import LLMResponse, LLMStreamChunk


def _patch_runtime(monkeypatch, make_service, seen: list[dict]) -> None:
    async def _fake_build_runtime(settings, **options):
        seen.append({"stream": settings.llm_stream, **options})
        return await make_service(llm_stream=settings.llm_stream)

    monkeypatch.setattr("nyaagent.cli.main.build_runtime", _fake_build_runtime)


def test_providers_json_lists_llm_and_tts_types() -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["providers", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    llm = {item["id"]: item for item in payload["llm"]}
    assert {"openai", "deepseek", "openrouter"} <= set(llm)
    assert "model" in llm["openai"]["fields"]
    assert [item["id"] for item in payload["tts"]] == ["openai-tts"]


def test_providers_plain_output() -> None:
    result = CliRunner().invoke(cli, ["providers"])

    assert result.exit_code == 0
    assert "llm\topenai\tOpenAI" in result.stdout.splitlines()


def test_ask_json_output_with_scripted_provider(monkeypatch, make_service, script) -> None:
    script.responses = [LLMResponse(text="Nya~ hello there")]
    seen: list[dict] = []
    _patch_runtime(monkeypatch, make_service, seen)

    result = CliRunner().invoke(cli, ["ask", "hello", "--json", "--model", "stub-model"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["ok"] is True
    assert payload["text"] == "Nya~ hello there"
    assert payload["events"][-1]["kind"] == "dialogue_complete"
    assert seen == [
        {
            "stream": False,
            "provider": "openai",
            "base_url": "",
            "model": "stub-model",
            "api_key": "",
        }
    ]


def test_ask_stream_prints_final_text(monkeypatch, make_service, script) -> None:
    script.streams = [
        [LLMStreamChunk(delta="purr"), LLMStreamChunk(delta="~"), LLMStreamChunk(done=True)]
    ]
    seen: list[dict] = []
    _patch_runtime(monkeypatch, make_service, seen)
    monkeypatch.setenv("NYA_PROVIDER", "deepseek")

    result = CliRunner().invoke(cli, ["ask", "hi", "--stream"])

    assert result.exit_code == 0
    assert result.stdout.strip() == "purr~"
    assert seen[0]["stream"] is True
    assert seen[0]["provider"] == "deepseek"


def test_ask_reports_provider_error(monkeypatch, make_service, script) -> None:
    script.responses = [LLMResponse(text="HTTP 401: unauthorized", finish_reason="error")]
    _patch_runtime(monkeypatch, make_service, [])

    result = CliRunner().invoke(cli, ["ask", "hello"])

    assert result.exit_code == 1
    assert "[Error] HTTP 401: unauthorized" in result.output


def test_ask_rejects_invalid_settings(monkeypatch) -> None:
    monkeypatch.setenv("MAX_TOOL_ITERATIONS", "0")

    result = CliRunner().invoke(cli, ["ask", "hello"])

    assert result.exit_code == 1
    assert "MAX_TOOL_ITERATIONS(must be > 0)" in result.output


def test_final_text_prefers_last_reply() -> None:
    events = [
        AgentEvent.dialogue("first"),
        AgentEvent.command_response("tool_status", "calling get_time"),
        AgentEvent.stream_end("s1", "second"),
    ]

    assert final_text(events) == "second"
    assert final_text([AgentEvent.command_response("help", "", False, "Unknown")]) == "Unknown"
    assert final_text([]) == ""
