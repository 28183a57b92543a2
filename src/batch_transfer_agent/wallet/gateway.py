"""Paymaster gateway client -- gasless sends and schedules via httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from batch_transfer_agent.config import GatewayConfig

logger = logging.getLogger("batch_transfer_agent.wallet.gateway")


class GatewayError(Exception):
    """The paymaster gateway rejected the request or was unreachable."""


class PaymasterGateway:
    """Calls the gateway's action endpoint (``{"action": ..., **params}``)."""

    def __init__(self, config: GatewayConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    async def call(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(
                    self.config.url,
                    headers=headers,
                    json={"action": action, **params},
                )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway unreachable for '{action}': {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or not data.get("success"):
            message = data.get("error") or f"Gateway request failed: HTTP {resp.status_code}"
            raise GatewayError(message)
        logger.debug(f"Gateway action '{action}' ok")
        return data

    async def send_transfer(
        self,
        to: str,
        amount: str,
        from_address: str,
        signature: str,
        deadline: int,
        fee_wei: int,
    ) -> str:
        data = await self.call(
            "transfer.send",
            {
                "to": to,
                "amount": amount,
                "from": from_address,
                "signature": signature,
                "deadline": deadline,
                "fee": str(fee_wei),
            },
        )
        tx_hash = data.get("tx_hash")
        if not tx_hash:
            raise GatewayError("Gateway accepted the transfer but returned no tx_hash")
        return tx_hash

    async def schedule_transfer(
        self,
        to: str,
        amount: str,
        execute_at: int,
        user_ref: str,
        fee_estimate: str | None = None,
    ) -> tuple[str, str]:
        """Returns ``(tx_hash, schedule_id)``."""
        params: dict[str, Any] = {
            "to": to,
            "amount": amount,
            "execute_at": execute_at,
            "user_ref": user_ref,
        }
        if fee_estimate is not None:
            params["fee"] = fee_estimate
        data = await self.call("transfer.scheduled", params)
        schedule_id = data.get("schedule_id")
        if schedule_id is None:
            raise GatewayError("Gateway accepted the schedule but returned no schedule_id")
        return data.get("tx_hash") or "", str(schedule_id)

    async def estimate_schedule_fee(self, amount: str) -> str:
        data = await self.call("transfer.estimate_fee", {"amount": amount, "type": "scheduled"})
        return str(data.get("fee", self.config.fee))
