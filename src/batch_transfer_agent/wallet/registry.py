"""Global name-service lookup over HTTP (``@handle`` -> address)."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from batch_transfer_agent.config import RegistryConfig
from batch_transfer_agent.storage.models import ResolvedRecipient

logger = logging.getLogger("batch_transfer_agent.wallet.registry")


class HttpNameRegistry:
    """``GlobalRegistry`` backed by a JSON endpoint.

    ``GET {url}?name=<token>`` is expected to answer
    ``{"address": "0x...", "name": "..."}`` or 404. Any transport or
    decoding failure counts as "no match".
    """

    def __init__(self, config: RegistryConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.config.url)

    async def resolve(self, token: str) -> Optional[ResolvedRecipient]:
        if not self.enabled or not token:
            return None
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.get(self.config.url, params={"name": token})
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Name registry lookup failed for '{token}': {e}")
            return None

        address = data.get("address") if isinstance(data, dict) else None
        if not address:
            return None
        return ResolvedRecipient(address=address, name=data.get("name") or token)
