"""Web3 chain client: standard sends, time-locks, balances and top-ups."""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal

from eth_account import Account
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from batch_transfer_agent.config import ChainConfig
from batch_transfer_agent.storage.models import Signer, TxReceipt
from batch_transfer_agent.wallet.gateway import PaymasterGateway

logger = logging.getLogger("batch_transfer_agent.wallet.provider")

ERC20_ABI = [
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "name",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "nonces",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

TIMELOCK_ABI = [
    {
        "name": "scheduleTransferNative",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "unlockTime", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "executeTransfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "scheduleId", "type": "uint256"}],
        "outputs": [],
    },
]


class Web3ChainClient:
    """``ChainClient`` over a single EVM RPC endpoint and the paymaster gateway.

    Blocking web3 calls run in a worker thread, serialized by one lock so the
    connected signer behaves as a single connection.
    """

    def __init__(
        self,
        chain: ChainConfig,
        gateway: PaymasterGateway,
        native_token: str = "VCN",
        web3: Web3 | None = None,
    ) -> None:
        self.chain = chain
        self.gateway = gateway
        self.native_token = native_token
        self._w3 = web3
        self._signer: Signer | None = None
        self._lock = asyncio.Lock()

    def get_web3(self) -> Web3:
        """Return the (cached) Web3 instance, with POA middleware off mainnet."""
        if self._w3 is None:
            w3 = Web3(Web3.HTTPProvider(self.chain.rpc_url))
            if self.chain.chain_id != 1:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._w3 = w3
        return self._w3

    # ------------------------------------------------------------------
    # Signer lifecycle
    # ------------------------------------------------------------------

    async def connect(self, signer: Signer) -> str:
        self._signer = signer
        return signer.address

    async def disconnect(self) -> None:
        self._signer = None

    def _require_signer(self) -> Signer:
        if self._signer is None:
            raise RuntimeError("No signer connected. Call connect() first.")
        return self._signer

    async def _run(self, func, *args):
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_native_balance(self, address: str) -> Decimal:
        def _balance() -> Decimal:
            w3 = self.get_web3()
            wei = w3.eth.get_balance(Web3.to_checksum_address(address))
            return Decimal(str(Web3.from_wei(wei, "ether")))

        return await self._run(_balance)

    # ------------------------------------------------------------------
    # Sends
    # ------------------------------------------------------------------

    async def send_gasless(self, recipient: str, amount: str) -> TxReceipt:
        """Relay a token transfer through the paymaster using an EIP-2612 permit."""
        signer = self._require_signer()
        fee = Decimal(self.gateway.config.fee)
        total_wei = Web3.to_wei(Decimal(amount) + fee, "ether")
        deadline = int(time.time()) + self.gateway.config.permit_ttl_seconds
        signature = await self._run(self._sign_permit, signer, total_wei, deadline)
        tx_hash = await self.gateway.send_transfer(
            to=Web3.to_checksum_address(recipient),
            amount=amount,
            from_address=signer.address,
            signature=signature,
            deadline=deadline,
            fee_wei=Web3.to_wei(fee, "ether"),
        )
        logger.info(f"Gasless transfer relayed: {amount} to {recipient} tx={tx_hash}")
        return TxReceipt(hash=tx_hash)

    async def send_standard(self, recipient: str, amount: str, token: str) -> TxReceipt:
        signer = self._require_signer()
        token = token.upper()
        if token in self.chain.tokens:
            tx_hash = await self._run(self._send_erc20, signer, recipient, amount, token)
        else:
            tx_hash = await self._run(self._send_native, signer.private_key, recipient, amount)
        logger.info(f"Standard transfer sent: {amount} {token} to {recipient} tx={tx_hash}")
        return TxReceipt(hash=tx_hash)

    async def admin_top_up(self, address: str, amount: str) -> TxReceipt:
        if not self.chain.admin_private_key:
            raise RuntimeError("Admin top-up is not configured (chain.admin_private_key).")
        tx_hash = await self._run(self._send_native, self.chain.admin_private_key, address, amount)
        logger.info(f"Admin top-up of {amount} to {address} tx={tx_hash}")
        return TxReceipt(hash=tx_hash)

    # ------------------------------------------------------------------
    # Time-locks
    # ------------------------------------------------------------------

    async def schedule_gasless(
        self,
        recipient: str,
        amount: str,
        delay_seconds: int,
        user_ref: str,
    ) -> TxReceipt:
        fee = await self.gateway.estimate_schedule_fee(amount)
        tx_hash, schedule_id = await self.gateway.schedule_transfer(
            to=Web3.to_checksum_address(recipient),
            amount=amount,
            execute_at=int(time.time()) + delay_seconds,
            user_ref=user_ref,
            fee_estimate=fee,
        )
        return TxReceipt(hash=tx_hash, schedule_id=schedule_id)

    async def schedule_legacy(self, recipient: str, amount: str, delay_seconds: int) -> TxReceipt:
        signer = self._require_signer()
        tx_hash, schedule_id = await self._run(
            self._schedule_native, signer, recipient, amount, delay_seconds
        )
        return TxReceipt(hash=tx_hash, schedule_id=str(schedule_id))

    async def execute_scheduled(self, schedule_id: str) -> TxReceipt:
        if not self.chain.executor_private_key:
            raise RuntimeError("Scheduler executor key is not configured (chain.executor_private_key).")
        tx_hash = await self._run(self._execute_timelock, int(schedule_id))
        return TxReceipt(hash=tx_hash)

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _sign_permit(self, signer: Signer, value: int, deadline: int) -> str:
        w3 = self.get_web3()
        token_address = Web3.to_checksum_address(self.chain.tokens[self.native_token])
        token = w3.eth.contract(address=token_address, abi=ERC20_ABI)
        token_name = token.functions.name().call()
        nonce = token.functions.nonces(signer.address).call()

        domain = {
            "name": token_name,
            "version": "1",
            "chainId": self.chain.chain_id,
            "verifyingContract": token_address,
        }
        types = {
            "Permit": [
                {"name": "owner", "type": "address"},
                {"name": "spender", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "nonce", "type": "uint256"},
                {"name": "deadline", "type": "uint256"},
            ],
        }
        message = {
            "owner": signer.address,
            "spender": Web3.to_checksum_address(self.gateway.config.paymaster_address),
            "value": value,
            "nonce": nonce,
            "deadline": deadline,
        }
        signed = Account.sign_typed_data(signer.private_key, domain, types, message)
        return "0x" + signed.signature.hex().removeprefix("0x")

    def _send_native(self, private_key: bytes | str, to_address: str, amount: str) -> str:
        """Build, sign, and send a native-coin transfer.

        Uses EIP-1559 fee parameters with a legacy gas price fallback.
        """
        w3 = self.get_web3()
        from_account = w3.eth.account.from_key(private_key)
        tx: dict = {
            "to": Web3.to_checksum_address(to_address),
            "value": Web3.to_wei(Decimal(amount), "ether"),
            "nonce": w3.eth.get_transaction_count(from_account.address),
            "chainId": self.chain.chain_id,
        }

        try:
            latest = w3.eth.get_block("latest")
            base_fee = latest.get("baseFeePerGas")
            if base_fee is None:
                raise ValueError("No baseFeePerGas")
            max_priority = Web3.to_wei(1.5, "gwei")
            tx["maxFeePerGas"] = base_fee * 2 + max_priority
            tx["maxPriorityFeePerGas"] = max_priority
            tx["gas"] = w3.eth.estimate_gas(tx)
        except ValueError:
            tx.pop("maxFeePerGas", None)
            tx.pop("maxPriorityFeePerGas", None)
            tx["gasPrice"] = w3.eth.gas_price
            tx["gas"] = w3.eth.estimate_gas(tx)

        signed = w3.eth.account.sign_transaction(tx, private_key)
        return self._submit(w3, signed.raw_transaction)

    def _send_erc20(self, signer: Signer, to_address: str, amount: str, symbol: str) -> str:
        w3 = self.get_web3()
        token = w3.eth.contract(
            address=Web3.to_checksum_address(self.chain.tokens[symbol]), abi=ERC20_ABI
        )
        tx = token.functions.transfer(
            Web3.to_checksum_address(to_address), Web3.to_wei(Decimal(amount), "ether")
        ).build_transaction(
            {
                "from": signer.address,
                "nonce": w3.eth.get_transaction_count(signer.address),
                "chainId": self.chain.chain_id,
            }
        )
        signed = w3.eth.account.sign_transaction(tx, signer.private_key)
        return self._submit(w3, signed.raw_transaction)

    def _schedule_native(self, signer: Signer, to_address: str, amount: str, delay_seconds: int) -> tuple[str, int]:
        w3 = self.get_web3()
        timelock = w3.eth.contract(
            address=Web3.to_checksum_address(self.chain.timelock_address), abi=TIMELOCK_ABI
        )
        unlock_time = int(time.time()) + delay_seconds
        call = timelock.functions.scheduleTransferNative(
            Web3.to_checksum_address(to_address), unlock_time
        )
        value = Web3.to_wei(Decimal(amount), "ether")
        # The id the contract will assign, read by simulating first.
        schedule_id = call.call({"from": signer.address, "value": value})
        tx = call.build_transaction(
            {
                "from": signer.address,
                "value": value,
                "nonce": w3.eth.get_transaction_count(signer.address),
                "chainId": self.chain.chain_id,
            }
        )
        signed = w3.eth.account.sign_transaction(tx, signer.private_key)
        return self._submit(w3, signed.raw_transaction), schedule_id

    def _execute_timelock(self, schedule_id: int) -> str:
        w3 = self.get_web3()
        executor = w3.eth.account.from_key(self.chain.executor_private_key)
        timelock = w3.eth.contract(
            address=Web3.to_checksum_address(self.chain.timelock_address), abi=TIMELOCK_ABI
        )
        tx = timelock.functions.executeTransfer(schedule_id).build_transaction(
            {
                "from": executor.address,
                "nonce": w3.eth.get_transaction_count(executor.address),
                "chainId": self.chain.chain_id,
            }
        )
        signed = w3.eth.account.sign_transaction(tx, self.chain.executor_private_key)
        return self._submit(w3, signed.raw_transaction)

    @staticmethod
    def _submit(w3: Web3, raw_transaction: bytes) -> str:
        tx_hash = w3.eth.send_raw_transaction(raw_transaction)
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt.get("status") == 0:
            raise RuntimeError(f"Transaction {Web3.to_hex(tx_hash)} reverted")
        return Web3.to_hex(tx_hash)
