"""Click CLI group: providers and ask commands."""

from __future__ import annotations

import asyncio
import json

import click

from nyaagent.agent.events import AgentEvent, EventKind
from nyaagent.agent.service import AgentService, build_agent_service
from nyaagent.config import Settings, get_settings, validate_settings
from nyaagent.errors import ConfigError
from nyaagent.logging import configure_logging
from nyaagent.providers.base import ProviderMetadata
from nyaagent.providers.instances import ProviderInstanceManager
from nyaagent.providers.presets import build_default_registry
from nyaagent.providers.tts import build_default_tts_registry

CLI_INSTANCE_ID = "cli"
_FINAL_KINDS = (EventKind.DIALOGUE_COMPLETE, EventKind.STREAM_END)
_NOTICE_PREFIXES = ("[Error]", "[Warning]")


@click.group()
def cli() -> None:
    """NyaAgent orchestration engine CLI."""


def _metadata_dict(metadata: ProviderMetadata) -> dict[str, object]:
    return {
        "id": metadata.id,
        "name": metadata.name,
        "description": metadata.description,
        "fields": [f.key for f in metadata.config_schema],
        "required": [f.key for f in metadata.config_schema if f.required],
    }


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Print provider types as JSON.")
def providers(json_output: bool) -> None:
    """List the registered LLM and TTS provider types."""
    registries = {"llm": build_default_registry(), "tts": build_default_tts_registry()}
    if json_output:
        payload = {
            kind: [_metadata_dict(m) for m in registry.all()]
            for kind, registry in registries.items()
        }
        click.echo(json.dumps(payload, indent=2))
        return
    for kind, registry in registries.items():
        for metadata in registry.all():
            click.echo(f"{kind}\t{metadata.id}\t{metadata.name}")


async def build_runtime(
    settings: Settings,
    *,
    provider: str,
    base_url: str,
    model: str,
    api_key: str,
) -> AgentService:
    """One-shot agent with a single primary LLM instance built from options."""
    config: dict[str, str] = {}
    if base_url:
        config["base_url"] = base_url
    if model:
        config["model"] = model
    if api_key:
        config["api_key"] = api_key
    instances = ProviderInstanceManager(build_default_registry(), build_default_tts_registry())
    tasks = instances.load(
        {
            "llm_instances": [
                {
                    "instance_id": CLI_INSTANCE_ID,
                    "provider_id": provider,
                    "display_name": "CLI",
                    "config": config,
                }
            ],
            "primary_llm_instance_id": CLI_INSTANCE_ID,
        }
    )
    if tasks:
        await asyncio.gather(*tasks)
    return build_agent_service(instances, settings=settings)


def final_text(events: list[AgentEvent]) -> str:
    for event in reversed(events):
        if event.kind in _FINAL_KINDS and event.text is not None:
            return event.text
        if event.kind == EventKind.COMMAND_RESPONSE and event.command != "tool_status":
            return event.text if event.success else (event.error or "")
    return ""


async def _run_ask(settings: Settings, message: str, **options: str) -> list[AgentEvent]:
    service = await build_runtime(settings, **options)
    events: list[AgentEvent] = []
    service.set_event_listener(events.append)
    try:
        await service.handle_input(message, emit=events.append)
    finally:
        await service.close()
    return events


@cli.command()
@click.argument("message")
@click.option("--provider", type=str, default=None, help="Provider type id (default: NYA_PROVIDER).")
@click.option("--base-url", type=str, default=None, help="Override the provider base URL.")
@click.option("--model", type=str, default=None, help="Model name.")
@click.option("--api-key", type=str, default=None, help="API key (default: NYA_API_KEY).")
@click.option("--stream", is_flag=True, help="Use the streaming loop.")
@click.option("--json", "json_output", is_flag=True, help="Print structured JSON response.")
@click.option("--log-level", type=str, default="WARNING", show_default=True)
def ask(
    message: str,
    provider: str | None,
    base_url: str | None,
    model: str | None,
    api_key: str | None,
    stream: bool,
    json_output: bool,
    log_level: str,
) -> None:
    """Run one agent turn against a freshly configured provider and print the reply."""
    configure_logging(log_level, json_output=False)
    settings = get_settings()
    if stream:
        settings = settings.model_copy(update={"llm_stream": True})
    try:
        validate_settings(settings)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    events = asyncio.run(
        _run_ask(
            settings,
            message,
            provider=provider or settings.cli_provider,
            base_url=base_url if base_url is not None else settings.cli_base_url,
            model=model if model is not None else settings.cli_model,
            api_key=api_key if api_key is not None else settings.cli_api_key,
        )
    )
    text = final_text(events)
    ok = bool(text) and not text.startswith(_NOTICE_PREFIXES)
    if json_output:
        payload = {"ok": ok, "text": text, "events": [event.to_dict() for event in events]}
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    if not ok:
        raise click.ClickException(text or "no reply")
    click.echo(text)
