"""OpenAI-compatible vendor presets and the default LLM registry."""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx

from nyaagent.providers.base import LLMProvider, ProviderConfig, ProviderMetadata
from nyaagent.providers.openai_compat import (
    OPENAI_METADATA,
    OpenAIProvider,
    common_config_fields,
)
from nyaagent.providers.registry import ProviderRegistry


@dataclass(slots=True, frozen=True)
class CompatiblePreset:
    """Everything that distinguishes a compatible vendor: endpoint and model."""

    id: str
    name: str
    base_url: str
    model: str | None = None
    description: str = ""
    fixed_base_url: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    def metadata(self) -> ProviderMetadata:
        fields = common_config_fields(
            base_url=self.base_url,
            model=self.model,
            model_required=self.model is None,
        )
        if self.fixed_base_url:
            fields = [f for f in fields if f.key != "base_url"]
        return ProviderMetadata(
            id=self.id,
            name=self.name,
            description=self.description,
            config_schema=fields,
        )


class CompatibleProvider(OpenAIProvider):
    def __init__(
        self,
        config: ProviderConfig,
        *,
        preset: CompatiblePreset,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config, transport=transport)
        self.preset = preset
        self.metadata = preset.metadata()
        self.default_base_url = preset.base_url
        self.default_model = preset.model

    @property
    def base_url(self) -> str:
        if self.preset.fixed_base_url:
            return self.preset.base_url.rstrip("/")
        return super().base_url

    def default_headers(self) -> dict[str, str]:
        headers = super().default_headers()
        headers.update(self.preset.headers)
        return headers


PRESETS: tuple[CompatiblePreset, ...] = (
    CompatiblePreset(
        id="deepseek",
        name="DeepSeek",
        base_url="https://api.deepseek.com",
        model="deepseek-chat",
        description="DeepSeek chat and reasoner models; reasoning content is streamed separately.",
    ),
    CompatiblePreset(
        id="siliconflow",
        name="SiliconFlow",
        base_url="https://api.siliconflow.cn/v1",
        model="Qwen/Qwen2.5-7B-Instruct",
    ),
    CompatiblePreset(
        id="dashscope",
        name="Alibaba DashScope",
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        model="qwen-plus",
    ),
    CompatiblePreset(
        id="zhipu",
        name="Zhipu GLM",
        base_url="https://open.bigmodel.cn/api/paas/v4",
        model="glm-4-flash",
    ),
    CompatiblePreset(
        id="volcengine",
        name="Volcengine Ark",
        base_url="https://ark.cn-beijing.volces.com/api/v3",
        description="Model is the endpoint id created in the Ark console.",
    ),
    CompatiblePreset(
        id="groq",
        name="Groq",
        base_url="https://api.groq.com/openai/v1",
        model="llama-3.3-70b-versatile",
    ),
    CompatiblePreset(
        id="mistral",
        name="Mistral AI",
        base_url="https://api.mistral.ai/v1",
        model="mistral-small-latest",
    ),
    CompatiblePreset(
        id="xai",
        name="xAI Grok",
        base_url="https://api.x.ai/v1",
        model="grok-3-mini",
    ),
    CompatiblePreset(
        id="openrouter",
        name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        model="openai/gpt-4o-mini",
        description="One key for many upstream vendors.",
        fixed_base_url=True,
        headers={"HTTP-Referer": "https://github.com/NyaDeskPet", "X-Title": "NyaDeskPet"},
    ),
)


def register_compatible(
    registry: ProviderRegistry[LLMProvider],
    preset: CompatiblePreset,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    registry.register(
        preset.metadata(),
        lambda config: CompatibleProvider(config, preset=preset, transport=transport),
    )


def build_default_registry(
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry[LLMProvider]:
    registry: ProviderRegistry[LLMProvider] = ProviderRegistry("llm")
    registry.register(OPENAI_METADATA, lambda config: OpenAIProvider(config, transport=transport))
    for preset in PRESETS:
        register_compatible(registry, preset, transport=transport)
    return registry
