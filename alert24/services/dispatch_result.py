"""Structured result returned by every notification channel."""
from dataclasses import dataclass
from typing import Optional


@dataclass
class DispatchResult:
    """Outcome of one send attempt."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
