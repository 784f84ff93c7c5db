"""
Parley Chat Prompts - System prompt and context blocks

Contains:
- PromptConfig: immutable prompt/behaviour configuration, built once and
  passed into the augmenter and orchestrator
- build_system_prompt(): base prompt + behaviour rules + tools section
- format_memory_block(): labelled block of results from other sessions
- format_memory_fallback(): explicit "searched, found nothing" notice
- Canned conversational texts (empty answer, round limit, rate limit, ...)

The base prompt never asks the model to prioritise previous conversations.
That instruction only exists inside the results block, next to the
results it refers to.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, List, Sequence, Tuple

BASE_INSTRUCTIONS = """You are a helpful AI assistant. You can use tools for web search, stock prices, weather, the current time, and for searching the user's other chat sessions.

Answer general knowledge questions directly from your own knowledge. Use information from the current conversation when it is available. Only use information from other sessions when it is provided to you or you search for it."""

DEFAULT_BEHAVIOR_RULES: Tuple[str, ...] = (
    "Use markdown formatting for readability. Use code blocks with language specifiers.",
    "When writing code, always use actual values, never placeholders like [object Object].",
    "Only call search_chat_history for information that is NOT in the current conversation.",
    "Use get_stock_price, get_weather and get_time for real-time questions; use search_web for current events.",
    "Do not make redundant tool calls.",
    "If a tool fails, explain what went wrong in plain words and suggest an alternative. Never show raw error codes.",
    "Never say you have no information from previous conversations when answering a general knowledge question.",
    "Be concise but thorough. Acknowledge when you do not know something.",
)

MEMORY_FOUND_HEADER = "INFORMATION FOUND IN OTHER SESSIONS"
MEMORY_FOUND_INSTRUCTION = (
    "The user's other chat sessions were searched for \"{query}\". The entries above are from those "
    "sessions. Prioritize this information from previous conversations when it answers the question; "
    "otherwise answer from general knowledge."
)
MEMORY_EMPTY_NOTICE = (
    "CHAT HISTORY SEARCH: The user's other chat sessions were searched for \"{query}\" and nothing "
    "relevant was found. Answer using your general knowledge. If the question is about the user "
    "personally, say you could not find it and ask them to tell you."
)

EMPTY_RESPONSE_TEXT = (
    "I apologize, but I was unable to generate a response. Could you please rephrase your question?"
)
ROUND_LIMIT_TEXT = (
    "I had to stop because I reached the limit of {rounds} tool-use steps for one message. "
    "Here is what I have so far; please ask a more specific question if you need more."
)
RESPONSE_TRUNCATED_TEXT = "\n\n[Response truncated due to length]"
MODEL_ERROR_TEXT = "Sorry, I ran into a problem generating a response. Please try again."
MODEL_TIMEOUT_TEXT = "The AI is taking too long to respond. Please try again."
RATE_LIMITED_TEXT = (
    "You're sending messages too quickly. Please wait {retry_after} seconds before trying again."
)
SHUTTING_DOWN_TEXT = "The server is restarting. Please send your message again in a moment."
TOO_LONG_TEXT = "Your message is too long ({length} characters). Please keep it under {limit} characters."


@dataclass(frozen=True)
class PromptConfig:
    """System instructions and behaviour rules. Derive variants with replace()."""

    instructions: str = BASE_INSTRUCTIONS
    behavior_rules: Tuple[str, ...] = DEFAULT_BEHAVIOR_RULES
    memory_found_header: str = MEMORY_FOUND_HEADER
    memory_found_instruction: str = MEMORY_FOUND_INSTRUCTION
    memory_empty_notice: str = MEMORY_EMPTY_NOTICE
    memory_snippet_chars: int = 500
    empty_response_text: str = EMPTY_RESPONSE_TEXT
    round_limit_text: str = ROUND_LIMIT_TEXT

    def with_overrides(self, **kwargs) -> "PromptConfig":
        return replace(self, **kwargs)


def build_tools_section(tool_names: Iterable[str]) -> str:
    names = sorted(tool_names)
    if not names:
        return ""
    return "TOOLS YOU HAVE: " + ", ".join(names) + "\nTool descriptions contain full usage guidance."


def build_system_prompt(config: PromptConfig, tool_names: Iterable[str] = ()) -> str:
    """Compose the base system prompt for a turn."""
    parts = [config.instructions.strip()]
    if config.behavior_rules:
        parts.append("RULES:\n" + "\n".join(f"- {rule}" for rule in config.behavior_rules))
    tools = build_tools_section(tool_names)
    if tools:
        parts.append(tools)
    parts.append(f"Current date: {datetime.now().strftime('%A, %B %d, %Y')}")
    return "\n\n".join(parts)


def _describe_source(title: str, timestamp) -> str:
    label = title or "Untitled Chat"
    if timestamp is not None:
        label += f", {timestamp.strftime('%Y-%m-%d')}"
    return label


def format_memory_block(config: PromptConfig, query: str, hits: Sequence) -> str:
    """Labelled context block for non-empty search results.

    Hit content is included verbatim (long entries are cut at
    ``memory_snippet_chars``).
    """
    lines: List[str] = [f"{config.memory_found_header}:"]
    for hit in hits:
        content = hit.content
        if len(content) > config.memory_snippet_chars:
            content = content[: config.memory_snippet_chars] + "..."
        source = _describe_source(hit.chat_title, hit.timestamp)
        speaker = "User" if hit.role == "user" else "Assistant" if hit.role == "assistant" else "Note"
        lines.append(f"- [{source}] {speaker}: {content}")
    lines.append("")
    lines.append(config.memory_found_instruction.format(query=query))
    return "\n".join(lines)


def format_memory_fallback(config: PromptConfig, query: str) -> str:
    """Notice injected when a search ran but produced nothing usable."""
    return config.memory_empty_notice.format(query=query)
