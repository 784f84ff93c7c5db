"""
Parley Chat Orchestration - Per-turn pipeline components

Components:
- Session / Turn / StreamChunk: Connection state and turn values
- ContextAugmenter: Memory decision (Skip / Search) and context building
- LLMGateway: Streaming model access with retry and circuit breaker
- ToolOrchestrator: Model/tool loop producing StreamChunks
- ConnectionManager: Session table, event routing, turn lifecycle

Turn flow:
    ConnectionManager.submit_turn
        -> RateLimiter.admit
        -> ContextAugmenter.augment
        -> ToolOrchestrator.run (LLMGateway + ToolRegistry)
        -> StreamingRelay.emit
"""

from .session import Message, Session, StreamChunk, Turn, normalize_history
from .augmenter import (
    ContextAugmenter,
    EffectiveContext,
    MemoryClassifier,
    RuleBasedClassifier,
    Search,
    Skip,
    TriggerPolicy,
)
from .orchestrator import LLMGateway, ToolOrchestrator
from .connections import ConnectionManager

__all__ = [
    "Message",
    "Session",
    "StreamChunk",
    "Turn",
    "normalize_history",
    "ContextAugmenter",
    "EffectiveContext",
    "MemoryClassifier",
    "RuleBasedClassifier",
    "Search",
    "Skip",
    "TriggerPolicy",
    "LLMGateway",
    "ToolOrchestrator",
    "ConnectionManager",
]
