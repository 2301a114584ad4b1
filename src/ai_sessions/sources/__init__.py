"""Session sources for the different AI coding tool storage formats."""

from collections.abc import Callable

from ai_sessions.config import Config
from ai_sessions.logging import get_logger

from .base import PaginatedSource, SessionSource, SourceRegistry, supports_pagination
from .claude_code import ClaudeCodeSource
from .codex import CodexSource
from .copilot import CopilotSource
from .dual import DualBackendSource
from .gemini import GeminiSource
from .mistral import MistralSource
from .opencode import OpencodeFileSource, OpencodeSqliteSource, opencode_source

__all__ = [
    "ClaudeCodeSource",
    "CodexSource",
    "CopilotSource",
    "DualBackendSource",
    "GeminiSource",
    "MistralSource",
    "OpencodeFileSource",
    "OpencodeSqliteSource",
    "PaginatedSource",
    "SessionSource",
    "SourceRegistry",
    "SOURCE_FACTORIES",
    "build_registry",
    "supports_pagination",
]

logger = get_logger("sources")

SOURCE_FACTORIES: dict[str, Callable[[Config], SessionSource]] = {
    "opencode": opencode_source,
    "copilot": CopilotSource.from_config,
    "mistral": MistralSource.from_config,
    "claude_code": ClaudeCodeSource.from_config,
    "codex": CodexSource.from_config,
    "gemini_cli": GeminiSource.from_config,
}


def build_registry(config: Config) -> SourceRegistry:
    """Create a registry holding every source enabled in the config.

    Args:
        config: Loaded configuration

    Returns:
        Registry with one source per enabled source name
    """
    registry = SourceRegistry()
    for name, factory in SOURCE_FACTORIES.items():
        if not config.source(name).enabled:
            logger.debug("Source disabled: source=%s", name)
            continue
        registry.register(factory(config))
    return registry
