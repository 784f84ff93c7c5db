"""
Parley Logging Configuration - Color-Coded Logs

Provides:
- ColorFormatter: ANSI color-coded log output
- Helper functions: log_message_in, log_message_out, log_tool, log_llm,
  log_memory, log_admission
- setup_logging(): Configure application logging

Usage:
    from logging_config import setup_logging, log_message_in, log_tool
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, "User question", chat="abc123")
"""

import logging
import sys
from typing import Union

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    # Event colors
    "MSG_IN": "\033[96m",  # Cyan - incoming message
    "MSG_OUT": "\033[92m",  # Green - outgoing response
    "MEMORY": "\033[95m",  # Magenta - semantic memory
    "TOOL": "\033[93m",  # Yellow - tool calls
    "LLM": "\033[94m",  # Blue - LLM operations
    "ERROR": "\033[91m",  # Red - errors
    "WARN": "\033[33m",  # Orange/Yellow - warnings
    "DEBUG": "\033[90m",  # Gray - debug info
}


class ColorFormatter(logging.Formatter):
    """Formatter with colors per log level."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["DEBUG"],
        logging.INFO: COLORS["RESET"],
        logging.WARNING: COLORS["WARN"],
        logging.ERROR: COLORS["ERROR"],
        logging.CRITICAL: COLORS["ERROR"] + COLORS["BOLD"],
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _c(self, key: str) -> str:
        return COLORS[key] if self.use_color else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, COLORS["RESET"]) if self.use_color else ""

        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]
        # Short module name keeps lines compact while still locating the source
        source = record.name.rsplit(".", 1)[-1]

        formatted = (
            f"{self._c('DIM')}{timestamp}{self._c('RESET')} "
            f"[{color}{level}{self._c('RESET')}] "
            f"{self._c('DIM')}{source}{self._c('RESET')} "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure colored logging for the application."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=sys.stdout.isatty()))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


# =============================================================================
# COLORED LOG HELPER FUNCTIONS
# =============================================================================


def log_message_in(logger: logging.Logger, message: str, **context) -> None:
    """Log incoming user message.

    Args:
        logger: Logger instance
        message: User message text
        **context: Additional context (chat, history, attachments, etc.)
    """
    preview = message[:80] + "..." if len(message) > 80 else message
    ctx = " ".join(f"{k}={v}" for k, v in context.items())
    logger.info(f"{COLORS['MSG_IN']}>>> MESSAGE{COLORS['RESET']} {preview} [{ctx}]")


def log_message_out(
    logger: logging.Logger,
    tools_used: list = None,
    chars: int = 0,
    rounds: int = 0,
) -> None:
    """Log a completed response."""
    tools = ", ".join(tools_used) if tools_used else "none"
    logger.info(
        f"{COLORS['MSG_OUT']}<<< RESPONSE{COLORS['RESET']} tools=[{tools}] chars={chars} rounds={rounds}"
    )


def log_tool(
    logger: logging.Logger,
    tool_name: str,
    state: str,
    **context,
) -> None:
    """Log tool execution.

    Args:
        logger: Logger instance
        tool_name: Name of the tool
        state: 'start' or 'end'
        **context: Additional context (args, success, duration, etc.)
    """
    ctx = " ".join(f"{k}={v}" for k, v in context.items()) if context else ""
    if state == "start":
        logger.info(f"{COLORS['TOOL']}>>> TOOL{COLORS['RESET']} {tool_name} {ctx}")
    else:
        logger.info(f"{COLORS['TOOL']}<<< TOOL{COLORS['RESET']} {tool_name} {ctx}")


def log_llm(
    logger: logging.Logger,
    state: str,
    model: str = "",
    duration: float = 0,
    round_num: int = 0,
) -> None:
    """Log LLM call start/end."""
    if state == "start":
        logger.info(f"{COLORS['LLM']}>>> LLM{COLORS['RESET']} calling {model} (round {round_num})")
    else:
        logger.info(f"{COLORS['LLM']}<<< LLM{COLORS['RESET']} {model} completed in {duration:.1f}s")


def log_memory(logger: logging.Logger, decision: str, query: str = "", hits: int = -1) -> None:
    """Log an augmentation decision and, for searches, the hit count."""
    if decision == "skip":
        logger.info(f"{COLORS['MEMORY']}... MEMORY{COLORS['RESET']} skip")
    elif hits < 0:
        logger.info(f"{COLORS['MEMORY']}>>> MEMORY{COLORS['RESET']} search '{query}'")
    else:
        logger.info(f"{COLORS['MEMORY']}<<< MEMORY{COLORS['RESET']} '{query}' hits={hits}")


def log_admission(logger: logging.Logger, identity: str, allowed: bool, **context) -> None:
    """Log a rate limiter rejection. Admissions are only logged at debug."""
    ctx = " ".join(f"{k}={v}" for k, v in context.items())
    if allowed:
        logger.debug(f"admit {identity} {ctx}")
    else:
        logger.warning(f"{COLORS['WARN']}!!! RATE LIMIT{COLORS['RESET']} {identity} {ctx}")
