"""Recipient resolution: raw token -> address and display name."""

from __future__ import annotations

import logging
from typing import Optional

from web3 import Web3

from batch_transfer_agent.storage.models import ResolvedRecipient

logger = logging.getLogger("batch_transfer_agent.recipients")

UNKNOWN_RECIPIENT = "New Recipient"


def is_address(token: str | None) -> bool:
    return bool(token) and Web3.is_address(token.strip())


async def resolve(token: str, contacts=None, registry=None) -> ResolvedRecipient:
    """Resolve *token* against the address book, then the global registry.

    Order: a valid address (named from contacts if known), an exact contact
    match on internal name / name / alias, the registry, and finally the
    token itself with ``resolved=False``. Never raises.
    """
    token = (token or "").strip()

    if is_address(token):
        contact = await _lookup(contacts, token)
        if contact is None:
            return ResolvedRecipient(address=token, name=UNKNOWN_RECIPIENT)
        return ResolvedRecipient(address=token, name=contact.name, user_id=contact.email)

    # The directory strips the "@" of a handle itself.
    contact = await _lookup(contacts, token)
    if contact is not None:
        return ResolvedRecipient(address=contact.address, name=contact.name, user_id=contact.email)

    handle = token[1:] if token.startswith("@") else token
    if registry is not None and handle:
        try:
            found: Optional[ResolvedRecipient] = await registry.resolve(handle)
        except Exception as e:
            logger.warning(f"Global registry failed for '{handle}': {e}")
            found = None
        if found is not None and found.address:
            return ResolvedRecipient(address=found.address, name=found.name or handle, user_id=found.user_id)

    logger.info(f"Could not resolve recipient '{token}'")
    return ResolvedRecipient(address=token, name=UNKNOWN_RECIPIENT, resolved=False)


async def _lookup(contacts, key: str):
    if contacts is None or not key:
        return None
    try:
        return await contacts.lookup(key)
    except Exception as e:
        logger.warning(f"Contact lookup failed for '{key}': {e}")
        return None
