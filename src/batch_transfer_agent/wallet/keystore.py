"""Encrypted keystore management using eth-account."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from eth_account import Account

from batch_transfer_agent.storage.models import Signer

Account.enable_unaudited_hdwallet_features()


class CredentialError(Exception):
    """Decrypting the keystore or deriving the signer failed."""


@dataclass(frozen=True)
class WalletAuthorization:
    """What the user hands over to authorize a batch: blob plus password."""

    encrypted: dict
    password: str = field(repr=False)


def _account_from_secret(secret: str):
    secret = secret.strip()
    if len(secret.split()) >= 12:
        return Account.from_mnemonic(secret)
    return Account.from_key(secret)


def import_wallet(
    wallet_dir: Path,
    secret: str,
    password: str,
    kdf: str | None = None,
    iterations: int | None = None,
) -> str:
    """Encrypt a recovery phrase or raw private key into ``keystore.json``.

    Parameters
    ----------
    wallet_dir:
        Directory where ``keystore.json`` will be written.
    secret:
        A BIP-39 mnemonic (12+ words) or a hex private key.
    password:
        Password used to encrypt the key.

    Returns
    -------
    str
        The checksummed address of the imported wallet.

    Raises
    ------
    FileExistsError
        If a keystore already exists in *wallet_dir*.
    CredentialError
        If *secret* is neither a valid mnemonic nor a private key.
    """
    keystore_path = wallet_dir / "keystore.json"
    if keystore_path.exists():
        raise FileExistsError(
            f"Wallet already exists at {keystore_path}. "
            "Delete it first if you want to import another one."
        )
    try:
        acct = _account_from_secret(secret)
    except Exception as exc:
        raise CredentialError(f"Invalid recovery phrase or private key: {exc}") from exc

    encrypted = Account.encrypt(acct.key, password, kdf=kdf, iterations=iterations)
    wallet_dir.mkdir(parents=True, exist_ok=True)
    keystore_path.write_text(json.dumps(encrypted, indent=2), encoding="utf-8")
    return acct.address


def load_keystore(wallet_dir: Path) -> dict:
    """Read the encrypted keystore blob.

    Raises
    ------
    FileNotFoundError
        If no keystore file exists.
    """
    keystore_path = wallet_dir / "keystore.json"
    if not keystore_path.exists():
        raise FileNotFoundError(f"No keystore found at {keystore_path}")
    return json.loads(keystore_path.read_text(encoding="utf-8"))


def load_address(wallet_dir: Path) -> str | None:
    """Read the wallet address from a keystore file without decrypting.

    Returns ``None`` if no keystore file exists.
    """
    try:
        data = load_keystore(wallet_dir)
    except FileNotFoundError:
        return None
    raw_address = data.get("address", "")
    if not raw_address.startswith("0x"):
        raw_address = "0x" + raw_address
    from web3 import Web3

    return Web3.to_checksum_address(raw_address)


class KeystoreCredential:
    """``WalletCredential`` backed by a V3 keystore.

    :meth:`decrypt` yields the secret (hex private key); :meth:`derive_signer`
    accepts either that or a mnemonic.
    """

    def decrypt(self, encrypted: dict, password: str) -> str:
        try:
            key = Account.decrypt(encrypted, password)
        except Exception as exc:
            raise CredentialError(f"Failed to decrypt keystore: {exc}") from exc
        return "0x" + bytes(key).hex()

    def derive_signer(self, secret: str) -> Signer:
        try:
            acct = _account_from_secret(secret)
        except Exception as exc:
            raise CredentialError(f"Failed to derive signer: {exc}") from exc
        return Signer(address=acct.address, private_key=bytes(acct.key))

    def unlock(self, authorization: WalletAuthorization) -> Signer:
        """Decrypt and derive in one step."""
        return self.derive_signer(self.decrypt(authorization.encrypted, authorization.password))
