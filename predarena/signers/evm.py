from __future__ import annotations

from typing import Any, Dict

from eth_account import Account


class EvmSigner:
    """EVM signing capability for one agent wallet on Polygon."""

    chain = "polygon"

    def __init__(self, private_key: str) -> None:
        key = private_key.strip()
        if not key.startswith("0x"):
            key = "0x" + key
        self._account = Account.from_key(key)
        self._key = key

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def private_key(self) -> str:
        # The order-book client signs its own order payloads and needs the raw key.
        return self._key

    def sign_transaction(self, tx: Dict[str, Any]) -> str:
        signed = self._account.sign_transaction(tx)
        return "0x" + signed.raw_transaction.hex().removeprefix("0x")

    def __repr__(self) -> str:
        return f"EvmSigner(address={self.address})"
