"""Text-to-speech provider contract and the OpenAI speech adapter."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass

import httpx

from nyaagent.errors import ProviderError
from nyaagent.providers.base import (
    ConfiguredProvider,
    ProviderConfigField,
    ProviderMetadata,
    TestResult,
)
from nyaagent.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "pcm": "audio/pcm",
    "ogg": "audio/ogg",
}


def audio_format_to_mime_type(fmt: str | None) -> str:
    return _MIME_TYPES.get((fmt or "").lower(), "audio/mpeg")


@dataclass(slots=True)
class TTSRequest:
    text: str
    voice_id: str | None = None
    format: str | None = "mp3"
    speed: float | None = None
    volume: float | None = None


@dataclass(slots=True)
class TTSResponse:
    audio_base64: str
    mime_type: str = "audio/mpeg"
    duration: float | None = None


@dataclass(slots=True)
class VoiceInfo:
    id: str
    name: str
    description: str = ""


class TTSProvider(ConfiguredProvider):
    """Base class for speech providers.

    `synthesize()` raises `ProviderError` on failure; callers treat speech
    as best-effort.
    """

    async def synthesize(self, request: TTSRequest) -> TTSResponse:
        raise NotImplementedError

    async def get_voices(self) -> list[VoiceInfo]:
        return []

    async def test(self) -> TestResult:
        try:
            if not self.initialized:
                await self.initialize()
            await self.synthesize(TTSRequest(text="test"))
        except Exception as exc:
            return TestResult(success=False, error=str(exc) or type(exc).__name__)
        return TestResult(success=True)


OPENAI_TTS_VOICES = [
    VoiceInfo(id="alloy", name="Alloy", description="Neutral, balanced"),
    VoiceInfo(id="echo", name="Echo", description="Warm, clear male voice"),
    VoiceInfo(id="fable", name="Fable", description="Expressive British accent"),
    VoiceInfo(id="onyx", name="Onyx", description="Deep male voice"),
    VoiceInfo(id="nova", name="Nova", description="Friendly female voice"),
    VoiceInfo(id="shimmer", name="Shimmer", description="Bright female voice"),
]

OPENAI_TTS_METADATA = ProviderMetadata(
    id="openai-tts",
    name="OpenAI TTS",
    description="OpenAI /audio/speech endpoint or a compatible service.",
    config_schema=[
        ProviderConfigField(key="api_key", label="API Key", type="password", required=True),
        ProviderConfigField(
            key="base_url", label="API Base URL", default="https://api.openai.com/v1"
        ),
        ProviderConfigField(key="voice_id", label="Voice", default="alloy"),
        ProviderConfigField(key="model", label="Model", default="tts-1"),
        ProviderConfigField(
            key="format",
            label="Audio format",
            type="select",
            default="mp3",
            options=["mp3", "opus", "aac", "flac", "wav", "pcm"],
        ),
        ProviderConfigField(key="speed", label="Speed", type="number", default="1.0"),
        ProviderConfigField(key="timeout", label="Timeout (s)", type="number", default="60"),
        ProviderConfigField(key="proxy", label="Proxy"),
    ],
)


class OpenAITTSProvider(TTSProvider):
    metadata = OPENAI_TTS_METADATA

    async def synthesize(self, request: TTSRequest) -> TTSResponse:
        base_url = self.get_config_value("base_url", "https://api.openai.com/v1").rstrip("/")
        fmt = request.format or self.get_config_value("format", "mp3")
        body: dict[str, object] = {
            "model": self.get_config_value("model", "tts-1"),
            "input": request.text,
            "voice": request.voice_id or self.get_config_value("voice_id", "alloy"),
            "response_format": fmt,
        }
        speed = request.speed if request.speed is not None else self.get_config_value("speed", 0.0)
        if speed:
            body["speed"] = speed
        try:
            response = await self.client.post(f"{base_url}/audio/speech", json=body)
        except httpx.HTTPError as exc:
            raise ProviderError(f"speech request failed: {exc}") from exc
        if response.status_code >= 400:
            if response.status_code == 401:
                detail = "invalid API key"
            elif response.status_code == 429:
                detail = "rate limited or quota exhausted"
            else:
                detail = f"HTTP {response.status_code}: {response.text}"
            raise ProviderError(f"OpenAI TTS synthesis failed: {detail}")
        return TTSResponse(
            audio_base64=base64.b64encode(response.content).decode("ascii"),
            mime_type=audio_format_to_mime_type(fmt),
        )

    async def get_voices(self) -> list[VoiceInfo]:
        return list(OPENAI_TTS_VOICES)


def build_default_tts_registry(
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry[TTSProvider]:
    registry: ProviderRegistry[TTSProvider] = ProviderRegistry("tts")
    registry.register(
        OPENAI_TTS_METADATA,
        lambda config: OpenAITTSProvider(config, transport=transport),
    )
    return registry

