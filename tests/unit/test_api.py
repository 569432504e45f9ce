from __future__ import annotations

from decimal import Decimal

from fastapi.testclient import TestClient

from predarena.contracts.validation import validate_envelope_dict
from predarena.core.models import envelope_to_wire
from predarena.core.settings import WorkflowSettings
from predarena.ledger.models import TradeAction, TradeRecord
from predarena.ledger.repository import InMemoryLedger

from predarena.api.main import create_app

SETTINGS = WorkflowSettings(starting_capital=Decimal("100"))


class ValidatingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, stream: str, event) -> str:
        wire = envelope_to_wire(event)
        validate_envelope_dict(wire)
        self.published.append((stream, wire))
        return "1700000000000-0"


def _seeded_ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    session = ledger.get_or_create_running_session(SETTINGS.session_name, SETTINGS.starting_capital)
    for agent_id, solana, polygon in (("openai/gpt-5", "70", "20"), ("xai/grok-4", "80", "40")):
        agent = ledger.get_or_create_agent_session(
            session_id=session.session_id,
            agent_id=agent_id,
            agent_name=agent_id.split("/")[1],
            wallet_addresses={"solana": "So1", "polygon": "0xP"},
            starting_capital=Decimal("100"),
        )
        ledger.update_session_value(
            agent.agent_session_id, chain_balances={"solana": Decimal(solana), "polygon": Decimal(polygon)}
        )
    grok = ledger.get_agent_session(session.session_id, "xai/grok-4")
    ledger.record_trade(
        TradeRecord(
            trade_id="t1",
            decision_id="d1",
            agent_session_id=grok.agent_session_id,
            instrument_id="KXFED-26MAR-H0",
            venue="kalshi",
            outcome="yes",
            action=TradeAction.BUY,
            quantity=Decimal("10"),
            price=Decimal("0.4"),
            notional=Decimal("4.0"),
            settlement_ref="kalshi:sig1",
        )
    )
    return ledger


def test_health() -> None:
    client = TestClient(create_app(InMemoryLedger(), SETTINGS))
    assert client.get("/health").json() == {"status": "ok"}


def test_leaderboard_ranks_by_portfolio_value() -> None:
    client = TestClient(create_app(_seeded_ledger(), SETTINGS))
    body = client.get("/sessions/current/leaderboard").json()

    assert [a["agent_id"] for a in body["agents"]] == ["xai/grok-4", "openai/gpt-5"]
    assert body["agents"][0]["rank"] == 1
    assert body["agents"][0]["current_value"] == "120"
    assert body["agents"][1]["total_pnl"] == "-10"


def test_agent_views_accept_provider_prefixed_ids() -> None:
    client = TestClient(create_app(_seeded_ledger(), SETTINGS))

    balances = client.get("/agents/xai/grok-4/balances").json()
    assert balances["agent_id"] == "xai/grok-4"
    assert balances["chain_balances"] == {"solana": "80", "polygon": "40"}

    positions = client.get("/agents/xai/grok-4/positions").json()["positions"]
    assert positions[0]["quantity"] == "10"
    assert positions[0]["avg_entry_price"] == "0.4"

    trades = client.get("/agents/xai/grok-4/trades", params={"limit": 0}).json()["trades"]
    assert [t["settlement_ref"] for t in trades] == ["kalshi:sig1"]


def test_unknown_agent_is_404() -> None:
    client = TestClient(create_app(_seeded_ledger(), SETTINGS))
    assert client.get("/agents/nobody/balances").status_code == 404
    assert client.get("/agents/nobody/trades").status_code == 404


def test_trigger_publishes_to_the_agent_stream() -> None:
    publisher = ValidatingPublisher()
    client = TestClient(create_app(_seeded_ledger(), SETTINGS, publisher))

    resp = client.post("/agents/mistral/large/trigger", json={"details": {"note": "from dashboard"}})

    assert resp.status_code == 202
    body = resp.json()
    assert body["stream"] == "workflow.trigger.v1:mistral/large"
    assert body["message_id"] == "1700000000000-0"
    (stream, wire) = publisher.published[0]
    assert stream == body["stream"]
    assert wire["event_id"] == body["event_id"]
    assert wire["payload"]["trigger_type"] == "manual"


def test_trigger_with_unknown_type_is_rejected() -> None:
    publisher = ValidatingPublisher()
    client = TestClient(create_app(_seeded_ledger(), SETTINGS, publisher))
    resp = client.post("/agents/mistral-large/trigger", json={"trigger_type": "sunspots"})
    assert resp.status_code == 422
    assert publisher.published == []


def test_trigger_without_stream_is_unavailable() -> None:
    client = TestClient(create_app(_seeded_ledger(), SETTINGS))
    assert client.post("/agents/mistral-large/trigger", json={}).status_code == 503
