"""Free-text batch parser.

Turns pasted lists, CSV rows or chat-style text into ``TransferRequest``s::

    Alice, 0xABCDEF0123456789ABCDEF0123456789ABCDEF01, 30.5
    Bob 0xABCDEF0123456789ABCDEF0123456789ABCDEF01 30,50
    - **Carol** 12

Each line is split into fields, the address / amount / name are picked out,
and then an ordered list of matchers fills the missing half of
``{name, address}`` from the user's contacts. The first matcher that
answers wins, which gives the priority: explicit address, exact contact
name, substring contact name, raw name.

Known limitation: without an address, a multi-word name whose last word is
numeric (``"Agent 007 5"``) cannot be told apart from a name followed by an
amount. The first numeric token is taken as the amount.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from pydantic import ValidationError

from batch_transfer_agent.storage.models import Contact, TransferRequest

logger = logging.getLogger("batch_transfer_agent.batch_parser")

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{38,}$")
# "30,50" but not "1,000,000" and not the tail of a hex token.
_DECIMAL_COMMA_RE = re.compile(r"(?<![\w,.])(\d+),(\d+)(?![\w,.])")
# A field that is only digit groups, e.g. " 30" or "1,000".
_NUMBER_GROUP_RE = re.compile(r"^\s*\d+(?:,\d+)*$")
_LIST_MARKER_RE = re.compile(r"^(?:[-*+>]+|\d+[.)])\s+")
# Leading "-" or ">" glued to a word; "-5" keeps its sign.
_LEADING_MARKUP_RE = re.compile(r"^[->\s]+(?=[^\d.\s])")
_HEADER_WORDS = {"name", "address", "amount", "recipient", "wallet", "value", "token", "to"}
_QUOTES = "\"'`“”‘’"


@dataclass
class LineFields:
    """What one input line says, before contacts are consulted."""

    name: str = ""
    address: Optional[str] = None
    amount: Optional[str] = None


@dataclass
class Match:
    name: str
    address: Optional[str]


# ---------------------------------------------------------------------------
# Matchers
# ---------------------------------------------------------------------------

def _strip_handle(name: str) -> str:
    return name[1:] if name.startswith("@") else name


def _contact_names(contact: Contact) -> list[str]:
    return [n.lower() for n in (contact.name, contact.internal_name, contact.alias) if n]


class AddressFirstMatcher:
    """An explicit address always wins; the name comes from the line or contacts."""

    def match(self, fields: LineFields, contacts: list[Contact]) -> Optional[Match]:
        if not fields.address:
            return None
        name = fields.name
        if not name:
            wanted = fields.address.lower()
            for contact in contacts:
                if contact.address.lower() == wanted:
                    name = contact.name
                    break
        return Match(name=name, address=fields.address)


class ExactNameMatcher:
    def match(self, fields: LineFields, contacts: list[Contact]) -> Optional[Match]:
        wanted = _strip_handle(fields.name).lower()
        if not wanted:
            return None
        for contact in contacts:
            if wanted in _contact_names(contact):
                return Match(name=contact.name, address=contact.address)
        return None


class SubstringNameMatcher:
    def match(self, fields: LineFields, contacts: list[Contact]) -> Optional[Match]:
        wanted = _strip_handle(fields.name).lower()
        if len(wanted) < 2:
            return None
        for contact in contacts:
            if any(wanted in n or n in wanted for n in _contact_names(contact)):
                return Match(name=contact.name, address=contact.address)
        return None


class RawNameMatcher:
    """Last resort: keep the name, leave the address for the resolver."""

    def match(self, fields: LineFields, contacts: list[Contact]) -> Optional[Match]:
        if not fields.name:
            return None
        return Match(name=fields.name, address=None)


DEFAULT_MATCHERS = (
    AddressFirstMatcher(),
    ExactNameMatcher(),
    SubstringNameMatcher(),
    RawNameMatcher(),
)


# ---------------------------------------------------------------------------
# Line handling
# ---------------------------------------------------------------------------

def clean_token(token: str) -> str:
    """Strip markdown emphasis, list markers and quotes from a field."""
    token = token.replace("**", "").replace("__", "").strip()
    token = _LIST_MARKER_RE.sub("", token)
    token = _LEADING_MARKUP_RE.sub("", token)
    return token.strip(_QUOTES).strip()


def _comma_delimited(line: str) -> bool:
    if ", " in line:
        return True
    for i, ch in enumerate(line):
        if ch != ",":
            continue
        before = line[i - 1] if i > 0 else ""
        after = line[i + 1] if i + 1 < len(line) else ""
        if not (before.isdigit() and after.isdigit()):
            return True
    return "," in line and not any(ch.isspace() for ch in line)


def _split_on_commas(line: str) -> list[str]:
    """Split a comma-delimited line, keeping "30,50" and "1,000" in one field."""
    parts: list[str] = []
    for fragment in line.split(","):
        if (
            parts
            and _NUMBER_GROUP_RE.match(parts[-1])
            and fragment[:1].isdigit()
            and parts[-1][-1:].isdigit()
        ):
            parts[-1] = f"{parts[-1]},{fragment}"
        else:
            parts.append(fragment)
    return [_DECIMAL_COMMA_RE.sub(r"\1.\2", p.strip()) for p in parts]


def split_fields(line: str) -> list[str]:
    """Tokenize one line: tab/comma fields first, whitespace as the fallback."""
    if "\t" in line:
        parts = line.split("\t")
    elif _comma_delimited(line):
        parts = _split_on_commas(line)
    else:
        parts = [_DECIMAL_COMMA_RE.sub(r"\1.\2", line)]

    parts = [clean_token(p) for p in parts]
    parts = [p for p in parts if p]
    if len(parts) == 1 and len(parts[0].split()) > 1:
        parts = [clean_token(p) for p in parts[0].split()]
        parts = [p for p in parts if p]
    return parts


def _as_amount(token: str, strip_letters: bool) -> Optional[str]:
    text = token.replace(",", "")
    if strip_letters:
        text = re.sub(r"[A-Za-z]", "", text)
    text = text.strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return text if number.is_finite() else None


def extract_fields(tokens: list[str]) -> LineFields:
    fields = LineFields()
    rest = list(tokens)

    for token in rest:
        if _ADDRESS_RE.match(token):
            fields.address = token
            rest.remove(token)
            break

    # Plain numbers first, then tokens like "30VCN".
    for strip_letters in (False, True):
        for token in rest:
            amount = _as_amount(token, strip_letters)
            if amount is not None:
                fields.amount = amount
                rest.remove(token)
                break
        if fields.amount is not None:
            break

    fields.name = " ".join(t for t in rest if t).strip()
    return fields


def _is_header(tokens: list[str]) -> bool:
    words = {w.lower() for t in tokens for w in t.split()}
    return bool(words) and words <= _HEADER_WORDS


class BatchParser:
    """Parses free text into transfer requests with a configurable matcher chain."""

    def __init__(self, matchers: Iterable = DEFAULT_MATCHERS, token_symbol: str = "VCN") -> None:
        self.matchers = list(matchers)
        self.token_symbol = token_symbol

    def parse(self, raw_text: str, known_contacts: list[Contact] | None = None) -> list[TransferRequest]:
        contacts = list(known_contacts or [])
        requests: list[TransferRequest] = []
        for lineno, line in enumerate((raw_text or "").splitlines(), start=1):
            request = self.parse_line(line, contacts)
            if request is not None:
                requests.append(request)
            elif line.strip():
                logger.debug(f"Skipped line {lineno}: {line.strip()!r}")
        return requests

    def parse_line(self, line: str, contacts: list[Contact]) -> Optional[TransferRequest]:
        line = line.strip()
        if not line:
            return None
        tokens = split_fields(line)
        if not tokens or _is_header(tokens):
            return None

        fields = extract_fields(tokens)
        if not fields.name and not fields.address:
            return None
        if fields.amount is None:
            return None

        match = None
        for matcher in self.matchers:
            match = matcher.match(fields, contacts)
            if match is not None:
                break
        if match is None:
            return None

        try:
            return TransferRequest(
                recipient_raw=fields.address or fields.name,
                recipient=match.address,
                display_name=match.name,
                amount=fields.amount,
                token_symbol=self.token_symbol,
            )
        except ValidationError:
            logger.debug(f"Dropped line with non-positive amount: {line!r}")
            return None


def parse(raw_text: str, known_contacts: list[Contact] | None = None) -> list[TransferRequest]:
    """Parse *raw_text* with the default matcher chain."""
    return BatchParser().parse(raw_text, known_contacts)
