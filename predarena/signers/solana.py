from __future__ import annotations

import base64
import json

import base58
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction


class KeyLoadError(ValueError):
    pass


def load_keypair(secret: str) -> Keypair:
    """Parse a Solana secret key given as base58 or as a JSON byte array."""

    secret = secret.strip()
    if not secret:
        raise KeyLoadError("empty Solana secret key")

    if secret.startswith("["):
        try:
            raw = json.loads(secret)
        except json.JSONDecodeError as e:
            raise KeyLoadError("invalid JSON byte array for Solana secret key") from e
        if not isinstance(raw, list) or not all(isinstance(x, int) for x in raw):
            raise KeyLoadError("Solana secret key array must contain integers")
        key_bytes = bytes(raw)
    else:
        try:
            key_bytes = base58.b58decode(secret)
        except ValueError as e:
            raise KeyLoadError("Solana secret key is not valid base58") from e

    # Ed25519 secret key is 64 bytes (seed + public key).
    if len(key_bytes) != 64:
        raise KeyLoadError(f"Solana secret key must be 64 bytes, got {len(key_bytes)}")
    return Keypair.from_bytes(key_bytes)


class SolanaSigner:
    """SVM signing capability for one agent wallet. Holds the key in memory only."""

    chain = "solana"

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_secret(cls, secret: str) -> "SolanaSigner":
        return cls(load_keypair(secret))

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    @property
    def keypair(self) -> Keypair:
        return self._keypair

    def sign_message(self, message: bytes) -> Signature:
        return self._keypair.sign_message(message)

    def sign_transaction(self, tx_base64: str) -> str:
        """Sign a base64 versioned transaction prepared by a venue or bridge API.

        Only this wallet's signature slot is filled; other slots (e.g. a venue
        co-signer) are left as received.
        """

        tx = VersionedTransaction.from_bytes(base64.b64decode(tx_base64))
        message = tx.message
        signer_count = message.header.num_required_signatures
        signer_keys = list(message.account_keys)[:signer_count]
        if self.pubkey not in signer_keys:
            raise ValueError(f"transaction does not require a signature from {self.address}")

        signatures = list(tx.signatures)
        signatures[signer_keys.index(self.pubkey)] = self._keypair.sign_message(to_bytes_versioned(message))
        signed = VersionedTransaction.populate(message, signatures)
        return base64.b64encode(bytes(signed)).decode("ascii")

    def __repr__(self) -> str:
        return f"SolanaSigner(address={self.address})"
