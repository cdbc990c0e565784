"""
Structured JSON Logging with Rotation
For the AP2 Vacation Booking agents
"""

import logging
import json
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from ..config import LOG_DIR, LOG_LEVEL, LOG_TO_FILE


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


# Standard logging record attributes, everything else came in through extra=
_RECORD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def __init__(self, agent_name: str):
        super().__init__()
        self.agent_name = agent_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "agent": self.agent_name,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        extra_fields = {
            key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console output for readability."""

    LEVEL_COLORS = {
        "DEBUG": Colors.GRAY,
        "INFO": Colors.GREEN,
        "WARNING": Colors.YELLOW,
        "ERROR": Colors.RED,
        "CRITICAL": Colors.RED,
    }

    def __init__(self, agent_name: str):
        super().__init__()
        self.agent_name = agent_name

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, Colors.RESET)
        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S")

        formatted = (
            f"{Colors.GRAY}{timestamp}{Colors.RESET} "
            f"{color}[{record.levelname:7}]{Colors.RESET} "
            f"{Colors.CYAN}[{self.agent_name}]{Colors.RESET} "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def get_logger(agent_name: str, log_level: str = LOG_LEVEL) -> logging.Logger:
    """
    Create a configured logger for an agent with file and console handlers.

    Args:
        agent_name: Name of the agent (used in log file name and entries)
        log_level: Minimum log level to capture

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(f"ap2_vacation.{agent_name}")

    # Clear existing handlers to avoid duplicates on re-import
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    if LOG_TO_FILE:
        safe_name = agent_name.lower().replace(" ", "_").replace("-", "_")
        file_handler = RotatingFileHandler(
            str(LOG_DIR / f"{safe_name}.log"),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter(agent_name))
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter(agent_name))
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def log_a2a_message(
    logger: logging.Logger,
    direction: str,  # "SENT" or "RECEIVED"
    from_agent: str,
    to_agent: str,
    message: Dict[str, Any],
    duration_ms: Optional[float] = None,
):
    """Log an A2A envelope crossing an agent boundary."""
    arrow = "→" if direction == "SENT" else "←"
    logger.info(
        f"A2A {direction}: {from_agent} {arrow} {to_agent}",
        extra={
            "type": "a2a_message",
            "direction": direction,
            "from_agent": from_agent,
            "to_agent": to_agent,
            "message_id": message.get("message_id"),
            "context_id": message.get("context_id"),
            "part_count": len(message.get("parts", [])),
            "duration_ms": duration_ms,
            "payload_size": len(json.dumps(message, default=str)),
        },
    )


def log_mandate_event(
    logger: logging.Logger,
    event: str,  # "CREATED", "SIGNED", "VERIFIED", "EXPIRED", "REJECTED"
    mandate_type: str,
    mandate_id: str,
    details: Optional[Dict[str, Any]] = None,
):
    """Log a mandate lifecycle event."""
    logger.info(
        f"Mandate {event}: {mandate_type} [{mandate_id[:24]}]",
        extra={
            "type": "mandate_event",
            "event": event,
            "mandate_type": mandate_type,
            "mandate_id": mandate_id,
            **(details or {}),
        },
    )


def log_llm_call(
    logger: logging.Logger,
    model: str,
    prompt_preview: str,
    response_preview: str,
    duration_seconds: float,
):
    """Log an LLM (Ollama) call."""
    logger.info(
        f"LLM Call [{model}] - {duration_seconds:.2f}s",
        extra={
            "type": "llm_call",
            "model": model,
            "prompt_preview": prompt_preview[:200] + "..."
            if len(prompt_preview) > 200
            else prompt_preview,
            "response_preview": response_preview[:200] + "..."
            if len(response_preview) > 200
            else response_preview,
            "duration_seconds": duration_seconds,
        },
    )


def log_payment_event(
    logger: logging.Logger,
    event: str,  # "AUTHORIZED", "DECLINED", "SETTLED"
    transaction_id: str,
    amount: float,
    currency: str = "USD",
    details: Optional[Dict[str, Any]] = None,
):
    """Log a payment processing event."""
    logger.info(
        f"Payment {event}: {transaction_id} - {amount:.2f} {currency}",
        extra={
            "type": "payment_event",
            "event": event,
            "transaction_id": transaction_id,
            "amount": amount,
            "currency": currency,
            **(details or {}),
        },
    )


def log_transition(
    logger: logging.Logger,
    context_id: Optional[str],
    from_stage: str,
    to_stage: str,
    trigger: str,
):
    """Log a shopping session stage transition."""
    logger.info(
        f"Stage {from_stage} → {to_stage} ({trigger})",
        extra={
            "type": "stage_transition",
            "context_id": context_id,
            "from_stage": from_stage,
            "to_stage": to_stage,
            "trigger": trigger,
        },
    )
