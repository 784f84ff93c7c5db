"""
Parley Context Augmenter - Cross-session memory decision and injection

For each turn:
1. Classify the message: Skip (no memory needed) or Search(query)
2. On Search, query semantic memory within the caller's identity
3. Build the model context: system prompt (plus results block or
   "nothing found" notice), prior messages, and the new user message

A Skip never touches the memory service. A Search that fails or times out
is treated as "nothing found".
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple, Union

from ..chat_prompts import (
    PromptConfig,
    build_system_prompt,
    format_memory_block,
    format_memory_fallback,
)
from .session import USER, Message, Turn
from logging_config import log_memory
from services.attachments import process_attachments

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).parent / "memory_triggers.json"

NOTICE_FOUND = "found"
NOTICE_EMPTY = "empty"


# =============================================================================
# Decisions
# =============================================================================


@dataclass(frozen=True)
class Skip:
    """No memory lookup for this turn."""

    reason: str = ""


@dataclass(frozen=True)
class Search:
    """Look up ``query`` in the user's other sessions."""

    query: str


AugmentationDecision = Union[Skip, Search]


# =============================================================================
# Classifier
# =============================================================================

_PUNCTUATION = re.compile(r"[^\w\s]")
_APOSTROPHE = re.compile(r"['’]")


def normalize(text: str) -> str:
    """Lowercase, drop apostrophes, turn other punctuation into spaces."""
    text = _APOSTROPHE.sub("", (text or "").lower())
    return " ".join(_PUNCTUATION.sub(" ", text).split())


@dataclass(frozen=True)
class TriggerPolicy:
    """Compiled trigger rules. Load from JSON with TriggerPolicy.load()."""

    exclusions: Tuple[Pattern, ...] = ()
    recall_patterns: Tuple[Pattern, ...] = ()
    possessive_patterns: Tuple[Pattern, ...] = ()
    question_starters: frozenset = frozenset()
    document_keywords: frozenset = frozenset()
    stopwords: frozenset = frozenset()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerPolicy":
        def compile_all(key: str) -> Tuple[Pattern, ...]:
            return tuple(re.compile(p) for p in data.get(key, ()))

        return cls(
            exclusions=compile_all("exclusions"),
            recall_patterns=compile_all("recall_patterns"),
            possessive_patterns=compile_all("possessive_patterns"),
            question_starters=frozenset(data.get("question_starters", ())),
            document_keywords=frozenset(data.get("document_keywords", ())),
            stopwords=frozenset(data.get("stopwords", ())),
        )

    @classmethod
    def load(cls, path: Union[str, Path] = DEFAULT_POLICY_PATH) -> "TriggerPolicy":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def content_words(self, text: str) -> List[str]:
        return [w for w in text.split() if w not in self.stopwords]


class MemoryClassifier:
    """Decides whether a turn needs a memory lookup.

    Subclass and override classify() to plug in a different strategy
    (e.g. a model-based classifier).
    """

    def classify(self, text: str, prior_messages: Sequence[Message] = ()) -> AugmentationDecision:
        raise NotImplementedError


class RuleBasedClassifier(MemoryClassifier):
    """Pattern-based classifier.

    Searches only for explicit references to something the user said or
    shared before, or for questions about the user's own things ("what is
    my favorite animal"). General knowledge questions and statements are
    skipped.
    """

    def __init__(self, policy: Optional[TriggerPolicy] = None):
        self.policy = policy or TriggerPolicy.load()

    def classify(self, text: str, prior_messages: Sequence[Message] = ()) -> AugmentationDecision:
        normalized = normalize(text)
        if not normalized:
            return Skip("empty")

        policy = self.policy
        if any(p.search(normalized) for p in policy.exclusions):
            return Skip("excluded")

        captured = self._match(policy.recall_patterns, normalized)
        if captured is None:
            words = normalized.split()
            is_question = text.rstrip().endswith("?") or words[0] in policy.question_starters
            if not is_question:
                return Skip("not a question")
            captured = self._match(policy.possessive_patterns, normalized)
            if captured is None:
                if not policy.document_keywords.intersection(words):
                    return Skip("no personal reference")
                captured = ""

        query_words = policy.content_words(captured) or policy.content_words(normalized)
        query = " ".join(query_words) or normalized

        if query_words and self._visible_in(query_words, prior_messages):
            return Skip("answer visible in current chat")
        return Search(query)

    @staticmethod
    def _match(patterns: Iterable[Pattern], text: str) -> Optional[str]:
        """Captured ``q`` group of the first matching pattern ("" without one)."""
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                return (match.groupdict().get("q") or "").strip()
        return None

    @staticmethod
    def _visible_in(words: Sequence[str], prior_messages: Sequence[Message]) -> bool:
        seen = set()
        for message in prior_messages:
            seen.update(normalize(message.content).split())
        return bool(seen) and all(w in seen for w in words)


# =============================================================================
# Augmenter
# =============================================================================


@dataclass
class EffectiveContext:
    """Model-ready context for one turn."""

    messages: List[Dict[str, Any]]
    decision: AugmentationDecision
    hits: Tuple[Any, ...] = ()
    notice: Optional[str] = None
    rejected_attachments: List[str] = field(default_factory=list)

    @property
    def system_prompt(self) -> str:
        return self.messages[0]["content"] if self.messages else ""


class ContextAugmenter:
    """Builds the model context for a turn, consulting memory when needed."""

    def __init__(
        self,
        memory,
        prompt_config: Optional[PromptConfig] = None,
        tool_names: Iterable[str] = (),
        classifier: Optional[MemoryClassifier] = None,
        timeout_s: float = 5.0,
        search_limit: int = 5,
        max_attachment_bytes: int = 10 * 1024 * 1024,
        max_attachment_text_chars: int = 8000,
    ):
        self.memory = memory
        self.prompt_config = prompt_config or PromptConfig()
        self.tool_names = tuple(tool_names)
        self.classifier = classifier or RuleBasedClassifier()
        self.timeout_s = timeout_s
        self.search_limit = search_limit
        self.max_attachment_bytes = max_attachment_bytes
        self.max_attachment_text_chars = max_attachment_text_chars

    def decide(self, turn: Turn) -> AugmentationDecision:
        return self.classifier.classify(turn.user_text, turn.prior_messages)

    async def augment(self, turn: Turn) -> EffectiveContext:
        decision = self.decide(turn)
        system_prompt = build_system_prompt(self.prompt_config, self.tool_names)
        hits: Tuple[Any, ...] = ()
        notice = None

        if isinstance(decision, Search):
            log_memory(logger, "search", decision.query)
            hits = await self._search(turn.user_id, decision.query)
            log_memory(logger, "search", decision.query, hits=len(hits))
            if hits:
                block = format_memory_block(self.prompt_config, decision.query, hits)
                notice = NOTICE_FOUND
            else:
                block = format_memory_fallback(self.prompt_config, decision.query)
                notice = NOTICE_EMPTY
            system_prompt = f"{system_prompt}\n\n{block}"
        else:
            log_memory(logger, "skip")
            logger.debug(f"Memory skipped: {decision.reason}")

        processed = process_attachments(
            turn.attachments,
            max_bytes=self.max_attachment_bytes,
            max_text_chars=self.max_attachment_text_chars,
        )
        user_content = turn.user_text
        if processed.text:
            user_content = f"{user_content}\n\n{processed.text}"
        user_message: Dict[str, Any] = {"role": USER, "content": user_content}
        if processed.images:
            user_message["images"] = processed.images

        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(m.to_llm() for m in turn.prior_messages)
        messages.append(user_message)

        return EffectiveContext(
            messages=messages,
            decision=decision,
            hits=hits,
            notice=notice,
            rejected_attachments=processed.rejected,
        )

    async def _search(self, identity: str, query: str) -> Tuple[Any, ...]:
        try:
            hits = await asyncio.wait_for(
                self.memory.search(identity, query, limit=self.search_limit),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Memory search timed out after {self.timeout_s}s, continuing without results")
            return ()
        except Exception as e:
            logger.warning(f"Memory search failed ({e}), continuing without results")
            return ()
        return tuple(hits or ())
