"""
Voice dialog package.

Keep imports lightweight so parsers like `src.dialog.numbers` can be used without
pulling in the asyncio runtime pieces (channel, engine, session) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.dialog.channel import SpeechChannel
    from src.dialog.config import Config
    from src.dialog.engine import ConversationEngine
    from src.dialog.otp import CredentialCaptureFallbackChain

_EXPORTS = {
    "Config": "src.dialog.config",
    "get_config": "src.dialog.config",
    "SpeechChannel": "src.dialog.channel",
    "ConversationEngine": "src.dialog.engine",
    "CredentialCaptureFallbackChain": "src.dialog.otp",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(name)
    import importlib

    return getattr(importlib.import_module(module_name), name)
