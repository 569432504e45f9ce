from __future__ import annotations

import json

import httpx
import pytest

from predarena.workflow.triggers import SignalRelayNotifier, infer_platform

from tests.fakes import TOKEN_ID

RELAYS = {"kalshi": "https://kalshi-relay.test/subscribe", "polymarket": "https://poly-relay.test/subscribe"}


def test_platform_is_inferred_from_instrument_shape() -> None:
    assert infer_platform(TOKEN_ID) == "polymarket"
    assert infer_platform("KXFED-26MAR-H0") == "kalshi"
    assert infer_platform("12345") == "kalshi"


@pytest.mark.asyncio
async def test_relays_are_notified_per_platform() -> None:
    seen: list[tuple[str, dict, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append((str(request.url), body, request.headers["Authorization"]))
        if request.url.host == "poly-relay.test":
            return httpx.Response(503)
        return httpx.Response(200, json={"subscribed": len(body["markets"])})

    notifier = SignalRelayNotifier(
        RELAYS, secret="s3cret", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    subscribed = await notifier.notify(["KXFED-26MAR-H0", TOKEN_ID, "KXFED-26MAR-H0", "KXCPI-26APR"])
    await notifier.aclose()

    assert subscribed == {"kalshi": 2}
    kalshi = [s for s in seen if "kalshi" in s[0]][0]
    assert kalshi[1] == {"type": "subscribe_markets", "markets": ["KXFED-26MAR-H0", "KXCPI-26APR"]}
    assert kalshi[2] == "Bearer s3cret"


@pytest.mark.asyncio
async def test_relays_are_skipped_without_a_secret() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    notifier = SignalRelayNotifier(RELAYS, secret=None, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    assert await notifier.notify(["KXFED"]) == {}
    await notifier.aclose()
