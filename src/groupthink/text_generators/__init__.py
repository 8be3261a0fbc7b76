# text_generators/__init__.py
from .base import Completion, StreamOptions, StreamResult, TextGeneratorAPI
from .anthropic import AnthropicTextGenerator, is_transient_error

__all__ = [
    "Completion",
    "StreamOptions",
    "StreamResult",
    "TextGeneratorAPI",
    "AnthropicTextGenerator",
    "is_transient_error",
]


def get_text_generator(api: str, max_tokens: int | None = None) -> TextGeneratorAPI:
    """Return an appropriate text-generator instance for the given API."""
    if api == "anthropic":
        return AnthropicTextGenerator(max_tokens)
    raise ValueError(f"Unknown API: {api}")
