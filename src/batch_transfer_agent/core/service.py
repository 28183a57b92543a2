"""TransferAgentService - wires one wallet profile's collaborators together."""

from __future__ import annotations

import logging
from pathlib import Path

from batch_transfer_agent.config import (
    AgentServiceConfig,
    get_profile_dir,
    load_config,
    save_config,
)
from batch_transfer_agent.core.agent import CancellationToken, ExecutionAgent, ProgressCallback
from batch_transfer_agent.core.batch_parser import BatchParser
from batch_transfer_agent.core.intents import intents_to_requests
from batch_transfer_agent.core.message_bus import MessageBus
from batch_transfer_agent.core.notifications import DatabaseNotifier
from batch_transfer_agent.core.scheduler import SchedulerRunner
from batch_transfer_agent.core.task_queue import TaskQueue
from batch_transfer_agent.storage.database import Database, get_database
from batch_transfer_agent.storage.models import BatchAgent, TransferRequest
from batch_transfer_agent.storage.store import ContactBook, ConversationLog, SqliteTransferStore
from batch_transfer_agent.wallet.chains import get_chain
from batch_transfer_agent.wallet.gateway import PaymasterGateway
from batch_transfer_agent.wallet.keystore import KeystoreCredential, WalletAuthorization, load_keystore
from batch_transfer_agent.wallet.provider import Web3ChainClient
from batch_transfer_agent.wallet.registry import HttpNameRegistry

logger = logging.getLogger("batch_transfer_agent.service")


class TransferAgentService:
    """The batch transfer agent of one wallet profile.

    Owns the database connection, the chain client, the execution agent,
    the desk and the scheduler runner. ``chain`` and ``registry`` can be
    injected (tests, alternative networks).
    """

    def __init__(
        self,
        config: AgentServiceConfig,
        profile_dir: Path,
        db: Database,
        chain=None,
        registry=None,
    ):
        self.config = config
        self.profile_dir = profile_dir
        self.db = db
        self.bus = MessageBus()
        self.store = SqliteTransferStore(db)
        self.contacts = ContactBook(db, config.user_id)
        self.chat_log = ConversationLog(db, config.user_id)
        self.notifier = DatabaseNotifier(db)
        self.registry = registry or HttpNameRegistry(config.registry)
        self.gateway = PaymasterGateway(config.gateway)
        self.chain = chain or Web3ChainClient(
            config.chain, self.gateway, native_token=config.native_token
        )
        self.credential = KeystoreCredential()
        self.parser = BatchParser(token_symbol=config.native_token)

        self.agent = ExecutionAgent(
            self.chain,
            self.store,
            notifier=self.notifier,
            contacts=self.contacts,
            registry=self.registry,
            chat_log=self.chat_log,
            bus=self.bus,
            settings=config.agent,
            native_token=config.native_token,
            user_id=config.user_id,
        )
        self.desk = TaskQueue(self.store, self.agent, config.user_id)
        self.scheduler = SchedulerRunner(
            self.chain,
            self.store,
            notifier=self.notifier,
            contacts=self.contacts,
            settings=config.scheduler,
        )

    @classmethod
    async def load(cls, base_path: Path | None = None, profile: str = "default", **overrides) -> TransferAgentService:
        """Open an existing profile created by ``init``."""
        profile_dir = get_profile_dir(profile, base_path, create=False)
        config_path = profile_dir / "config.yaml"
        if not config_path.exists():
            raise FileNotFoundError(
                f"No profile found at {profile_dir}. Run 'batch-transfer-agent init' first."
            )

        config = load_config(config_path)
        db = get_database(profile_dir)
        await db.connect()
        return cls(config=config, profile_dir=profile_dir, db=db, **overrides)

    @classmethod
    async def init(
        cls,
        base_path: Path | None = None,
        profile: str = "default",
        chain: str = "vision-testnet",
        user_id: str = "local-user",
    ) -> TransferAgentService:
        """Create a profile directory with a default config for *chain*."""
        profile_dir = get_profile_dir(profile, base_path)
        config = AgentServiceConfig(user_id=user_id, chain=get_chain(chain))
        save_config(config, profile_dir / "config.yaml")

        db = get_database(profile_dir)
        await db.connect()
        logger.info(f"Initialized profile '{profile}' at {profile_dir}")
        return cls(config=config, profile_dir=profile_dir, db=db)

    @property
    def wallet_dir(self) -> Path:
        return self.profile_dir / self.config.wallet_dir

    def authorization(self, password: str) -> WalletAuthorization:
        """Bundle the stored keystore with the password the user just typed."""
        return WalletAuthorization(encrypted=load_keystore(self.wallet_dir), password=password)

    async def parse(self, raw_text: str) -> list[TransferRequest]:
        contacts = await self.contacts.list_contacts()
        return self.parser.parse(raw_text, contacts)

    def from_intents(self, records: list[dict]) -> list[TransferRequest]:
        return intents_to_requests(records, default_symbol=self.config.native_token)

    async def run_batch(
        self,
        requests: list[TransferRequest],
        password: str,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BatchAgent | None:
        if not requests:
            return None
        return await self.agent.execute(
            requests,
            self.credential,
            self.authorization(password),
            on_progress=on_progress,
            cancel_token=cancel_token,
        )

    async def shutdown(self) -> None:
        await self.agent.close()
        await self.db.close()
