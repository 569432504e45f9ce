"""Per-agent wallet resolution.

Agents are grouped into series (one wallet pair per series). Keys come from the
environment as ``WALLET_<SERIES>_SVM_PRIVATE`` (base58) and
``WALLET_<SERIES>_EVM_PRIVATE`` (hex); either side may be absent, in which case
that chain is simply unavailable to the agent.

The registry is built once at process start and passed explicitly into the
workflow. It is read-only afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from .evm import EvmSigner
from .solana import SolanaSigner

logger = logging.getLogger(__name__)

_ENV_KEY = re.compile(r"^WALLET_(?P<series>[A-Z0-9_]+?)_(?P<chain>SVM|EVM)_PRIVATE$")


class SignerUnavailableError(LookupError):
    pass


def normalize_series(series: str) -> str:
    return re.sub(r"[^A-Z0-9]+", "_", series.strip().upper()).strip("_")


@dataclass(frozen=True)
class SignerSet:
    series: str
    svm: Optional[SolanaSigner] = None
    evm: Optional[EvmSigner] = None

    @property
    def addresses(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.svm is not None:
            out["solana"] = self.svm.address
        if self.evm is not None:
            out["polygon"] = self.evm.address
        return out


class WalletRegistry:
    def __init__(self, signers: Mapping[str, SignerSet], *, series_by_agent: Mapping[str, str] | None = None) -> None:
        self._signers = {normalize_series(k): v for k, v in signers.items()}
        self._series_by_agent = dict(series_by_agent or {})

    @classmethod
    def from_env(cls, environ: Mapping[str, str], *, series_by_agent: Mapping[str, str] | None = None) -> "WalletRegistry":
        raw: dict[str, dict[str, str]] = {}
        for key, value in environ.items():
            m = _ENV_KEY.match(key)
            if not m or not value.strip():
                continue
            raw.setdefault(m.group("series"), {})[m.group("chain")] = value

        signers: dict[str, SignerSet] = {}
        for series, keys in raw.items():
            svm = SolanaSigner.from_secret(keys["SVM"]) if "SVM" in keys else None
            evm = EvmSigner(keys["EVM"]) if "EVM" in keys else None
            signers[series] = SignerSet(series=series, svm=svm, evm=evm)
            logger.info(f"wallet series {series} loaded (svm={svm is not None}, evm={evm is not None})")
        return cls(signers, series_by_agent=series_by_agent)

    def series_for(self, agent_id: str) -> str:
        """Catalog entry first, otherwise the provider prefix of the agent id ("openai/gpt-5" -> OPENAI)."""

        series = self._series_by_agent.get(agent_id) or agent_id.split("/", 1)[0]
        return normalize_series(series)

    def get(self, agent_id: str) -> Optional[SignerSet]:
        return self._signers.get(self.series_for(agent_id))

    def resolve(self, agent_id: str) -> SignerSet:
        signers = self.get(agent_id)
        if signers is None:
            raise SignerUnavailableError(f"no wallet configured for agent {agent_id} (series {self.series_for(agent_id)})")
        return signers

    def series(self) -> list[str]:
        return sorted(self._signers)
