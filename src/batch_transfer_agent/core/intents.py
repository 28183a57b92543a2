"""Adapter from AI intent records to transfer requests.

The assistant emits records shaped like::

    {"intent": "schedule", "amount": "25", "recipient": "@bob",
     "symbol": "VCN", "time": "5 minutes"}

Only ``send`` and ``schedule`` become transfers; other intents (swap, stake,
bridge) belong to other flows and are ignored here.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from batch_transfer_agent.storage.models import IntentType, TransferRequest

logger = logging.getLogger("batch_transfer_agent.intents")

DEFAULT_DELAY_SECONDS = 120

_UNIT_SECONDS = (
    (re.compile(r"min|분"), 60),
    (re.compile(r"hour|hr|\d\s*h\b|\bh\b|시간"), 3600),
    (re.compile(r"sec|초|\d\s*s\b|\bs\b"), 1),
    (re.compile(r"day|일"), 86400),
)


def parse_delay(time_str: Optional[str]) -> int:
    """Convert a human time string to seconds.

    ``"5 minutes"`` -> 300, ``"2 hours"`` -> 7200, ``"45 sec"`` -> 45.
    A bare number means minutes. Missing input gives two minutes.
    """
    if time_str is None or not str(time_str).strip():
        return DEFAULT_DELAY_SECONDS
    text = str(time_str).strip().lower()
    digits = re.search(r"\d+", text)
    quantity = int(digits.group()) if digits else 2

    for pattern, seconds in _UNIT_SECONDS:
        if pattern.search(text):
            return quantity * seconds
    return quantity * 60


def intent_to_request(record: dict[str, Any], default_symbol: str = "VCN") -> Optional[TransferRequest]:
    """Build a request from one intent record, or ``None`` if it isn't a transfer."""
    try:
        intent = IntentType(str(record.get("intent", "")).lower())
    except ValueError:
        return None

    recipient = str(record.get("recipient") or "").strip()
    if not recipient:
        logger.info(f"Ignoring {intent.value} intent without a recipient")
        return None

    delay = 0
    if intent == IntentType.SCHEDULE:
        delay = parse_delay(record.get("time") or record.get("scheduleTime"))

    try:
        return TransferRequest(
            recipient_raw=recipient,
            amount=record.get("amount", ""),
            token_symbol=record.get("symbol") or default_symbol,
            intent=intent,
            delay_seconds=delay,
        )
    except ValidationError as e:
        logger.warning(f"Ignoring malformed {intent.value} intent: {e.errors()[0].get('msg')}")
        return None


def intents_to_requests(records: Iterable[dict[str, Any]], default_symbol: str = "VCN") -> list[TransferRequest]:
    requests = []
    for record in records:
        request = intent_to_request(record, default_symbol)
        if request is not None:
            requests.append(request)
    return requests
