from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from predarena.bridge.deposit import DepositAddressClient, DepositBridge
from predarena.bridge.withdrawal import WithdrawalBridge
from predarena.bridge.wormhole import WormholeClient
from predarena.chains.polygon_rpc import PolygonRpcClient
from predarena.chains.solana_rpc import SolanaRpcClient
from predarena.core.message_bus import RedisStreamBus
from predarena.core.settings import Settings, load_settings
from predarena.execution.models import Venue
from predarena.execution.router import OrderRouter
from predarena.execution.venues.immediate import ImmediateVenueApi, ImmediateVenueExecutor
from predarena.execution.venues.orderbook import ClobOrderBookClient, OrderBookVenueExecutor
from predarena.ledger.postgres import PostgresLedger
from predarena.rebalance.rebalancer import Rebalancer
from predarena.rebalance.tracking import PendingBridgeTracker
from predarena.settlement.fills import FillConfirmer
from predarena.signers.registry import WalletRegistry

from .decision import DecisionEngine, HoldDecisionEngine
from .durable import RedisCheckpointStore
from .orchestrator import TradingWorkflow
from .scheduler import Scheduler
from .signals import SignalListener
from .triggers import SignalRelayNotifier, Trigger

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    registry: WalletRegistry
    workflow: TradingWorkflow
    checkpoints: RedisCheckpointStore
    ledger: PostgresLedger
    rebalancer: Rebalancer
    withdrawal: WithdrawalBridge
    closers: list[Any]

    async def aclose(self) -> None:
        await self.rebalancer.drain()
        for c in self.closers:
            await c.aclose()
        self.ledger.close()


def load_engine(target: Optional[str]) -> DecisionEngine:
    """`package.module:attr` naming an engine instance or a zero-arg factory."""

    if not target:
        return HoldDecisionEngine()
    module_name, _, attr = target.partition(":")
    obj = getattr(importlib.import_module(module_name), attr or "engine")
    if isinstance(obj, type) or not hasattr(obj, "decide"):
        obj = obj()
    return obj


def build_runtime(settings: Settings, *, engine: DecisionEngine) -> Runtime:
    registry = WalletRegistry.from_env(os.environ, series_by_agent=settings.workflow.series_by_agent)
    if not registry.series():
        logger.warning("no_wallets_configured", extra={"env": settings.env})

    solana = SolanaRpcClient(settings.chains.solana_rpc_url, usdc_mint=settings.chains.solana_usdc_mint)
    polygon = PolygonRpcClient(
        settings.chains.polygon_rpc_url,
        usdc_address=settings.chains.polygon_usdc_address,
        chain_id=settings.chains.polygon_chain_id,
    )

    immediate_api = ImmediateVenueApi(
        quote_api_url=settings.immediate.quote_api_url,
        metadata_api_url=settings.immediate.metadata_api_url,
        api_key=settings.immediate.api_key,
        usdc_mint=settings.chains.solana_usdc_mint,
        cache_ttl_seconds=settings.immediate.market_cache_ttl_seconds,
    )
    router = OrderRouter(
        {
            Venue.KALSHI: ImmediateVenueExecutor(immediate_api, solana),
            Venue.POLYMARKET: OrderBookVenueExecutor(
                lambda signer: ClobOrderBookClient(
                    host=settings.orderbook.host, chain_id=settings.orderbook.chain_id, signer=signer
                )
            ),
        }
    )

    deposit_addresses = DepositAddressClient(settings.bridge.deposit_api_url)
    deposit = DepositBridge(
        solana=solana, polygon=polygon, addresses=deposit_addresses, min_amount=settings.bridge.deposit_min_amount
    )
    wormhole = WormholeClient(
        polygon,
        token_bridge=settings.bridge.polygon_token_bridge,
        core_bridge=settings.bridge.polygon_core_bridge,
        api_url=settings.bridge.wormholescan_url,
        redeem_builder_url=settings.bridge.redeem_builder_url,
    )
    withdrawal = WithdrawalBridge(
        solana=solana,
        polygon=polygon,
        wormhole=wormhole,
        min_amount=settings.bridge.withdrawal_min_amount,
        fee_estimate=settings.bridge.withdrawal_fee_estimate,
    )

    rebalancer = Rebalancer(
        policy=settings.rebalance,
        tracker=PendingBridgeTracker.redis(settings.redis_url, ttl_seconds=settings.rebalance.pending_ttl_seconds),
        deposit=deposit,
        withdrawal=withdrawal,
    )
    relays = SignalRelayNotifier(settings.workflow.signal_relay_urls, secret=settings.workflow.relay_secret)

    ledger = PostgresLedger(settings.postgres_dsn)
    checkpoints = RedisCheckpointStore(settings.redis_url)
    workflow = TradingWorkflow(
        settings=settings.workflow,
        ledger=ledger,
        registry=registry,
        router=router,
        engine=engine,
        checkpoints=checkpoints,
        fills=FillConfirmer(router),
        solana=solana,
        polygon=polygon,
        rebalancer=rebalancer,
        relays=relays,
    )
    return Runtime(
        settings=settings,
        registry=registry,
        workflow=workflow,
        checkpoints=checkpoints,
        ledger=ledger,
        rebalancer=rebalancer,
        withdrawal=withdrawal,
        closers=[immediate_api, deposit_addresses, wormhole, relays, solana, polygon],
    )


async def _run(args: argparse.Namespace) -> None:
    settings = load_settings(args.config)
    rt = build_runtime(settings, engine=load_engine(args.engine))
    try:
        if args.command == "init-db":
            rt.ledger.ensure_schema()
            logger.info("ledger schema ready")
        elif args.command == "run-once":
            details = json.loads(args.details) if args.details else {}
            result = await rt.workflow.run(args.agent, Trigger.manual(details), run_id=args.run_id)
            print(json.dumps(result.to_dict(), indent=2))
        elif args.command == "schedule":
            agents = args.agent or list(settings.workflow.agents)
            if not agents:
                raise SystemExit("no agents configured (workflow.agents or --agent)")
            await Scheduler(
                rt.workflow,
                agents,
                interval_seconds=settings.workflow.schedule_interval_seconds,
                checkpoints=rt.checkpoints,
                ttl_seconds=settings.workflow.checkpoint_ttl_seconds,
            ).run_forever()
        elif args.command == "listen":
            bus = RedisStreamBus(settings.redis_url)
            rt.closers.append(bus)
            listener = SignalListener(
                bus,
                rt.workflow,
                group=settings.redis_consumer_group,
                consumer=os.getenv("HOSTNAME", f"workflow-{args.agent}"),
            )
            await listener.listen(args.agent)
        elif args.command == "withdraw-resume":
            signers = rt.registry.resolve(args.agent)
            if signers.svm is None:
                raise SystemExit(f"agent {args.agent} has no solana signer")
            transfer = await rt.withdrawal.resume(args.source_tx, Decimal(args.amount), signers.svm)
            print(json.dumps(transfer.to_dict(), indent=2))
    finally:
        await rt.aclose()


def main() -> None:
    logging.basicConfig(level=logging.INFO)

    ap = argparse.ArgumentParser(prog="predarena-workflow")
    ap.add_argument("--config", default="config/settings.yaml")
    ap.add_argument("--engine", default=os.getenv("PREDARENA_DECISION_ENGINE"), help="module:attr of the decision engine")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create ledger tables")

    once = sub.add_parser("run-once", help="run the workflow once for an agent (manual trigger)")
    once.add_argument("--agent", required=True)
    once.add_argument("--run-id", help="resume an earlier run from its checkpoints")
    once.add_argument("--details", help="JSON object attached to the manual trigger")

    sched = sub.add_parser("schedule", help="run every configured agent on the schedule interval")
    sched.add_argument("--agent", action="append")

    listen = sub.add_parser("listen", help="run the workflow for each market signal on the agent's stream")
    listen.add_argument("--agent", required=True)

    resume = sub.add_parser("withdraw-resume", help="finish a withdrawal whose attestation timed out")
    resume.add_argument("--agent", required=True)
    resume.add_argument("--source-tx", required=True)
    resume.add_argument("--amount", required=True)

    asyncio.run(_run(ap.parse_args()))


if __name__ == "__main__":
    main()
