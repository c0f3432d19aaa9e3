"""nyaagent exception hierarchy.

All agent-specific exceptions inherit from NyaAgentError so callers at the
turn boundary can catch one type. Provider adapters convert network failures
into error responses instead of raising; these types cover the rest.
"""


class NyaAgentError(Exception):
    """Base exception for all nyaagent errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderError(NyaAgentError):
    """Error communicating with an LLM or TTS provider."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ConfigError(NyaAgentError):
    """Invalid or missing configuration."""


class PluginError(NyaAgentError):
    """Plugin could not be registered or activated."""


class SkillError(NyaAgentError):
    """Malformed skill definition."""
