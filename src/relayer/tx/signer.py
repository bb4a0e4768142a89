"""
Transaction Signer - handles transaction signing.

Manages the relayer's private key and signs batch transactions with it.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from eth_account import Account
from eth_account.datastructures import SignedTransaction
from eth_account.signers.local import LocalAccount

from relayer.config import RelayerConfig, get_config

logger = structlog.get_logger(__name__)


class SigningError(Exception):
    """Raised when a transaction cannot be signed."""
    pass


class TransactionSigner:
    """
    Handles transaction signing with the relayer's key.

    Supports loading keys from:
    - File path (a file holding the hex private key)
    - Hex string (for environment variable configuration)

    Security note: In production, consider using a HSM or
    secure key management service.
    """

    def __init__(self, config: Optional[RelayerConfig] = None):
        """
        Initialize the transaction signer.

        Args:
            config: Relayer configuration
        """
        self.config = config or get_config()
        self._account: Optional[LocalAccount] = None

    def load_key_from_file(self, key_path: str) -> None:
        """
        Load signing key from a file.

        Args:
            key_path: Path to a file containing the hex private key
        """
        path = Path(key_path)
        if not path.exists():
            raise FileNotFoundError(f"Signing key file not found: {key_path}")

        self._account = self._account_from_hex(path.read_text().strip())
        logger.info("signing_key_loaded", path=key_path, address=self._account.address)

    def load_key_from_hex(self, key_hex: str) -> None:
        """
        Load signing key from a hex string.

        Args:
            key_hex: 32-byte private key in hex, with or without ``0x``
        """
        self._account = self._account_from_hex(key_hex)
        logger.info("signing_key_loaded_from_hex", address=self._account.address)

    def load_from_config(self) -> None:
        """Load signing key from configuration."""
        if self.config.relayer_key_path:
            self.load_key_from_file(self.config.relayer_key_path)
        elif self.config.relayer_private_key:
            self.load_key_from_hex(self.config.relayer_private_key)
        else:
            raise ValueError("No signing key configured")

    @staticmethod
    def _account_from_hex(key_hex: str) -> LocalAccount:
        try:
            return Account.from_key(key_hex)
        except (ValueError, TypeError) as e:
            raise SigningError("Invalid private key") from e

    @property
    def address(self) -> Optional[str]:
        """Get the relayer's checksummed address."""
        return self._account.address if self._account else None

    @property
    def is_loaded(self) -> bool:
        """Check if a signing key is loaded."""
        return self._account is not None

    def sign_transaction(self, tx: Dict[str, Any]) -> SignedTransaction:
        """
        Sign a transaction.

        Args:
            tx: Transaction fields; must include ``chainId`` and ``nonce``

        Returns:
            Signed transaction (``raw_transaction`` and ``hash``)

        Raises:
            SigningError: If no key is loaded or the fields are invalid
        """
        if not self._account:
            raise SigningError("No signing key loaded")
        if "chainId" not in tx:
            raise SigningError("Refusing to sign a transaction without chainId")

        try:
            signed = self._account.sign_transaction(tx)
        except (ValueError, TypeError, KeyError) as e:
            raise SigningError(f"Failed to sign transaction: {e}") from e

        logger.debug("transaction_signed", tx_hash=signed_tx_hash(signed), nonce=tx.get("nonce"))
        return signed


def generate_test_key(config: Optional[RelayerConfig] = None) -> TransactionSigner:
    """
    Generate a new random signing key for testing.

    WARNING: Do not use in production. The key is not persisted.

    Returns:
        TransactionSigner with a new random key
    """
    signer = TransactionSigner(config)
    signer._account = Account.create()

    logger.warning("test_key_generated", address=signer.address)

    return signer


def signed_tx_hash(signed: SignedTransaction) -> str:
    """Hash of a signed transaction as ``0x`` hex."""
    return "0x" + bytes(signed.hash).hex()
