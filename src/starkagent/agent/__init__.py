"""Agent package for the starkagent Starknet wallet assistant.

The dialogue engine, the tool registry and the background action scheduler
live in separate modules; this package re-exports their public surface.
"""

from .engine import DialogueEngine
from .scheduler import BackgroundActionScheduler
from .tools import (
    ToolContext,
    ToolRegistry,
    ToolSpec,
    WalletTools,
    build_tool_registry,
)

__all__ = [
    "BackgroundActionScheduler",
    "DialogueEngine",
    "ToolContext",
    "ToolRegistry",
    "ToolSpec",
    "WalletTools",
    "build_tool_registry",
]
