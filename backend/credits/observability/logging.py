"""Structured logging helper for credit ledger operations."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("credits")


def redact_identifier(identifier: Optional[str]) -> str:
    """Shorten an e-mail style identifier so logs never carry full addresses."""

    if not identifier:
        return "[unknown]"
    text = str(identifier)
    name, sep, domain = text.partition("@")
    if not sep:
        return f"{text[:3]}..." if len(text) > 4 else text
    base, dot, extension = domain.partition(".")
    truncated_domain = f"{base[:3]}...{extension}" if dot else f"{base[:3]}..."
    return f"{name[:3]}...@{truncated_domain}"


def log_credit_event(*, message: str, user_id: Optional[str] = None, task_id: Optional[str] = None,
                     event_id: Optional[str] = None, level: int = logging.INFO,
                     extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"message": message}
    if user_id:
        payload["user"] = redact_identifier(user_id)
    if task_id:
        payload["task_id"] = task_id
    if event_id:
        payload["event_id"] = event_id
    if extra:
        payload.update(extra)
    logger.log(level, payload)
