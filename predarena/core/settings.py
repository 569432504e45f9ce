from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict

import os


class SettingsError(ValueError):
    pass


@dataclass(frozen=True)
class ImmediateVenueSettings:
    quote_api_url: str
    metadata_api_url: str
    api_key: str | None = None
    default_slippage_bps: int = 200
    market_cache_ttl_seconds: int = 300


@dataclass(frozen=True)
class OrderBookVenueSettings:
    host: str
    chain_id: int = 137


@dataclass(frozen=True)
class ChainSettings:
    solana_rpc_url: str
    solana_usdc_mint: str
    polygon_rpc_url: str
    polygon_chain_id: int
    polygon_usdc_address: str


@dataclass(frozen=True)
class BridgeSettings:
    deposit_api_url: str
    deposit_min_amount: Decimal
    withdrawal_min_amount: Decimal
    withdrawal_fee_estimate: Decimal
    wormholescan_url: str
    redeem_builder_url: str
    polygon_token_bridge: str
    polygon_core_bridge: str


@dataclass(frozen=True)
class RebalanceSettings:
    polygon_min_balance: Decimal
    solana_reserve: Decimal
    bridge_amount: Decimal
    pending_ttl_seconds: int = 35 * 60


@dataclass(frozen=True)
class WorkflowSettings:
    session_name: str = "Global Arena"
    starting_capital: Decimal = Decimal("10000")
    max_steps: int = 100
    schedule_interval_seconds: int = 900
    checkpoint_ttl_seconds: int = 7 * 24 * 3600
    agents: tuple[str, ...] = ()
    series_by_agent: Dict[str, str] = field(default_factory=dict)
    signal_relay_urls: Dict[str, str] = field(default_factory=dict)
    relay_secret: str | None = None


@dataclass(frozen=True)
class Settings:
    env: str
    redis_url: str
    redis_consumer_group: str
    postgres_dsn: str
    immediate: ImmediateVenueSettings
    orderbook: OrderBookVenueSettings
    chains: ChainSettings
    bridge: BridgeSettings
    rebalance: RebalanceSettings
    workflow: WorkflowSettings


def _dec(v: Any, name: str) -> Decimal:
    try:
        return Decimal(str(v))
    except Exception as e:
        raise SettingsError(f"{name} must be a number, got {v!r}") from e


def _section(data: Dict[str, Any], *path: str) -> Dict[str, Any]:
    cur: Any = data
    for k in path:
        cur = cur.get(k) if isinstance(cur, dict) else None
        if cur is None:
            return {}
    if not isinstance(cur, dict):
        raise SettingsError(f"{'.'.join(path)} must be a mapping")
    return cur


def _required(section: Dict[str, Any], key: str, where: str) -> Any:
    if key not in section or section[key] in (None, ""):
        raise SettingsError(f"missing required setting: {where}.{key}")
    return section[key]


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)

    # Keep imports optional at module import time (tests/tools may not need YAML).
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "PyYAML is required to load config/settings.yaml. Install with: pip install pyyaml"
        ) from e

    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return settings_from_dict(data, environ=os.environ)


def settings_from_dict(data: Dict[str, Any], *, environ: Dict[str, str] | None = None) -> Settings:
    """Build Settings from a parsed YAML mapping.

    Environment variables prefixed with ``PREDARENA_`` override the file; secrets
    (venue API key) are only ever read from the environment.
    """

    env = dict(environ or {})

    redis_section = _section(data, "redis")
    redis_url = env.get("PREDARENA_REDIS_URL") or _required(redis_section, "url", "redis")
    postgres_dsn = env.get("PREDARENA_POSTGRES_DSN") or _required(_section(data, "postgres"), "dsn", "postgres")

    imm = _section(data, "venues", "immediate")
    immediate = ImmediateVenueSettings(
        quote_api_url=env.get("PREDARENA_IMMEDIATE_QUOTE_URL") or _required(imm, "quote_api_url", "venues.immediate"),
        metadata_api_url=env.get("PREDARENA_IMMEDIATE_METADATA_URL")
        or _required(imm, "metadata_api_url", "venues.immediate"),
        api_key=env.get("PREDARENA_IMMEDIATE_API_KEY") or None,
        default_slippage_bps=int(imm.get("default_slippage_bps", 200)),
        market_cache_ttl_seconds=int(imm.get("market_cache_ttl_seconds", 300)),
    )

    ob = _section(data, "venues", "orderbook")
    orderbook = OrderBookVenueSettings(
        host=env.get("PREDARENA_ORDERBOOK_HOST") or _required(ob, "host", "venues.orderbook"),
        chain_id=int(ob.get("chain_id", 137)),
    )

    sol = _section(data, "chains", "solana")
    poly = _section(data, "chains", "polygon")
    chains = ChainSettings(
        solana_rpc_url=env.get("PREDARENA_SOLANA_RPC_URL") or _required(sol, "rpc_url", "chains.solana"),
        solana_usdc_mint=_required(sol, "usdc_mint", "chains.solana"),
        polygon_rpc_url=env.get("PREDARENA_POLYGON_RPC_URL") or _required(poly, "rpc_url", "chains.polygon"),
        polygon_chain_id=int(poly.get("chain_id", 137)),
        polygon_usdc_address=_required(poly, "usdc_address", "chains.polygon"),
    )

    dep = _section(data, "bridge", "deposit")
    wd = _section(data, "bridge", "withdrawal")
    bridge = BridgeSettings(
        deposit_api_url=_required(dep, "api_url", "bridge.deposit"),
        deposit_min_amount=_dec(dep.get("min_amount", 0), "bridge.deposit.min_amount"),
        withdrawal_min_amount=_dec(wd.get("min_amount", 1), "bridge.withdrawal.min_amount"),
        withdrawal_fee_estimate=_dec(wd.get("fee_estimate", "0.5"), "bridge.withdrawal.fee_estimate"),
        wormholescan_url=_required(wd, "wormholescan_url", "bridge.withdrawal"),
        redeem_builder_url=env.get("PREDARENA_REDEEM_BUILDER_URL")
        or _required(wd, "redeem_builder_url", "bridge.withdrawal"),
        polygon_token_bridge=_required(wd, "polygon_token_bridge", "bridge.withdrawal"),
        polygon_core_bridge=_required(wd, "polygon_core_bridge", "bridge.withdrawal"),
    )

    rb = _section(data, "rebalance")
    rebalance = RebalanceSettings(
        polygon_min_balance=_dec(rb.get("polygon_min_balance", 10), "rebalance.polygon_min_balance"),
        solana_reserve=_dec(rb.get("solana_reserve", 10), "rebalance.solana_reserve"),
        bridge_amount=_dec(rb.get("bridge_amount", 10), "rebalance.bridge_amount"),
        pending_ttl_seconds=int(rb.get("pending_ttl_seconds", 35 * 60)),
    )

    wf = _section(data, "workflow")
    series_by_agent = wf.get("series_by_agent") or {}
    if not isinstance(series_by_agent, dict):
        raise SettingsError("workflow.series_by_agent must be a mapping")
    workflow = WorkflowSettings(
        session_name=str(wf.get("session_name", "Global Arena")),
        starting_capital=_dec(wf.get("starting_capital", 10000), "workflow.starting_capital"),
        max_steps=int(wf.get("max_steps", 100)),
        schedule_interval_seconds=int(wf.get("schedule_interval_seconds", 900)),
        checkpoint_ttl_seconds=int(wf.get("checkpoint_ttl_seconds", 7 * 24 * 3600)),
        agents=tuple(str(a) for a in (wf.get("agents") or [])),
        series_by_agent={str(k): str(v) for k, v in series_by_agent.items()},
        signal_relay_urls={str(k): str(v) for k, v in (wf.get("signal_relay_urls") or {}).items()},
        relay_secret=env.get("PREDARENA_RELAY_SECRET") or None,
    )

    if workflow.max_steps <= 0:
        raise SettingsError("workflow.max_steps must be > 0")

    return Settings(
        env=str(env.get("PREDARENA_ENV") or data.get("env", "dev")),
        redis_url=redis_url,
        redis_consumer_group=redis_section.get("stream", {}).get("consumer_group", "predarena"),
        postgres_dsn=postgres_dsn,
        immediate=immediate,
        orderbook=orderbook,
        chains=chains,
        bridge=bridge,
        rebalance=rebalance,
        workflow=workflow,
    )
