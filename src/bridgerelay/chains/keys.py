"""Relayer key management.

The relayer signs mints with a single account. The key is held by a
``KeyManager`` passed explicitly to each chain client.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..errors import ConfigurationError


class KeyManager:
    """Holds the relayer account and signs transactions with it."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "KeyManager":
        key = private_key.strip()
        if not key.startswith("0x"):
            key = "0x" + key
        try:
            return cls(Account.from_key(key))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                "Invalid relayer private key", config_key="private_key", cause=e
            ) from e

    @classmethod
    def from_file(cls, path: str) -> "KeyManager":
        try:
            key = Path(path).read_text(encoding="utf-8").splitlines()[0]
        except (OSError, IndexError) as e:
            raise ConfigurationError(
                f"Cannot read relayer key file: {path}",
                config_key="key_file",
                config_value=path,
                cause=e,
            ) from e
        return cls.from_private_key(key)

    @classmethod
    def from_env(cls, variable: str = "BRIDGERELAY_PRIVATE_KEY") -> "KeyManager":
        key = os.getenv(variable)
        if not key:
            raise ConfigurationError(
                f"Environment variable {variable} is not set", config_key=variable
            )
        return cls.from_private_key(key)

    @classmethod
    def load(cls, key_file: Optional[str] = None) -> "KeyManager":
        """Key file when given, otherwise the environment."""
        if key_file:
            return cls.from_file(key_file)
        return cls.from_env()

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, transaction: Dict[str, Any]) -> Any:
        """Sign a transaction dict; returns eth_account's ``SignedTransaction``."""
        return self._account.sign_transaction(transaction)

    def __repr__(self) -> str:
        return f"KeyManager(address={self.address})"
