"""Tests for meta-event detection against a real (SQLite) event store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from telltide.detector.meta_event import MetaEventDetector
from telltide.detector.models import Subscription, parse_meta_event_config
from telltide.storage.repos import EventRepository

CONTRACT_A = "0x" + "A" * 40
CONTRACT_B = "0x" + "B" * 40
CONTRACT_C = "0x" + "C" * 40
MARKET_1 = "0x" + "a1" * 32
MARKET_2 = "0x" + "b2" * 32


def make_subscription(config: dict[str, Any]) -> Subscription:
    return Subscription(
        id="sub-1",
        user_id="user-1",
        name="Test subscription",
        webhook_url="https://hooks.example.com/telltide",
        config=parse_meta_event_config(config),
    )


def minutes_ago(minutes: float) -> datetime:
    return datetime.now(UTC) - timedelta(minutes=minutes)


@pytest.fixture
def detector(db_manager) -> MetaEventDetector:
    return MetaEventDetector(db_manager.get_async_session)


class TestEventCount:
    @pytest.mark.asyncio
    async def test_count_above_threshold_triggers(self, detector, make_event, seed_events) -> None:
        await seed_events(
            *[make_event(contract=CONTRACT_A, timestamp=minutes_ago(1)) for _ in range(12)]
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "contract_address": CONTRACT_A,
                "condition": {"operator": ">", "value": 10},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.event_count == 12
        assert result.threshold == 10
        assert result.triggered_by_contract is None
        assert result.window == "5m"

    @pytest.mark.asyncio
    async def test_events_outside_window_not_counted(
        self, detector, make_event, seed_events
    ) -> None:
        await seed_events(
            *[make_event(timestamp=minutes_ago(1)) for _ in range(3)],
            *[make_event(timestamp=minutes_ago(30)) for _ in range(10)],
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "condition": {"operator": ">", "value": 5},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is False
        assert result.event_count == 3

    @pytest.mark.asyncio
    async def test_other_event_types_and_chains_ignored(
        self, detector, make_event, seed_events
    ) -> None:
        await seed_events(
            make_event(timestamp=minutes_ago(1)),
            make_event("erc4626_deposit", timestamp=minutes_ago(1)),
            make_event(chain="base", timestamp=minutes_ago(1)),
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "1h",
                "condition": {"operator": "=", "value": 1},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.event_count == 1

    @pytest.mark.asyncio
    async def test_address_filters(self, detector, make_event, seed_events) -> None:
        whale = "0x" + "d" * 40
        await seed_events(
            make_event(from_address=whale, timestamp=minutes_ago(1)),
            make_event(from_address=whale, timestamp=minutes_ago(2)),
            make_event(to_address=whale, timestamp=minutes_ago(2)),
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "1h",
                "from_address": whale.upper().replace("0X", "0x"),
                "condition": {"operator": ">=", "value": 2},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.event_count == 2

    @pytest.mark.asyncio
    async def test_string_threshold_compares_against_zero(
        self, detector, make_event, seed_events
    ) -> None:
        await seed_events(make_event(timestamp=minutes_ago(1)))
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "1h",
                "condition": {"operator": ">", "value": "ten"},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.threshold == 0.0


class TestMultiContract:
    @pytest.mark.asyncio
    async def test_first_satisfying_contract_short_circuits(
        self, detector, make_event, seed_events
    ) -> None:
        await seed_events(
            *[make_event(contract=CONTRACT_A, timestamp=minutes_ago(1)) for _ in range(3)],
            *[make_event(contract=CONTRACT_B, timestamp=minutes_ago(1)) for _ in range(15)],
            *[make_event(contract=CONTRACT_C, timestamp=minutes_ago(1)) for _ in range(20)],
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "contracts": [CONTRACT_A, CONTRACT_B, CONTRACT_C],
                "condition": {"operator": ">", "value": 10},
            }
        )

        queried: list[tuple[str, ...] | None] = []
        original = EventRepository.count_matching

        async def spy(self, event_type, flt):
            queried.append(flt.contracts)
            return await original(self, event_type, flt)

        with patch.object(EventRepository, "count_matching", new=spy):
            result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.triggered_by_contract == CONTRACT_B
        assert result.event_count == 15
        assert queried == [(CONTRACT_A,), (CONTRACT_B,)]

    @pytest.mark.asyncio
    async def test_no_contract_satisfies(self, detector, make_event, seed_events) -> None:
        await seed_events(
            *[make_event(contract=CONTRACT_A, timestamp=minutes_ago(1)) for _ in range(3)],
            *[make_event(contract=CONTRACT_B, timestamp=minutes_ago(1)) for _ in range(4)],
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "contracts": [CONTRACT_A, CONTRACT_B],
                "condition": {"operator": ">", "value": 5},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is False
        assert result.triggered_by_contract is None

    @pytest.mark.asyncio
    async def test_per_contract_not_summed(self, detector, make_event, seed_events) -> None:
        # 4 + 4 would exceed 5, but each contract is judged on its own count.
        await seed_events(
            *[make_event(contract=CONTRACT_A, timestamp=minutes_ago(1)) for _ in range(4)],
            *[make_event(contract=CONTRACT_B, timestamp=minutes_ago(1)) for _ in range(4)],
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "contracts": [CONTRACT_A, CONTRACT_B],
                "condition": {"operator": ">", "value": 5},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is False

    @pytest.mark.asyncio
    async def test_single_entry_list_has_no_attribution(
        self, detector, make_event, seed_events
    ) -> None:
        await seed_events(
            *[make_event(contract=CONTRACT_A, timestamp=minutes_ago(1)) for _ in range(6)]
        )
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "contracts": [CONTRACT_A],
                "condition": {"operator": ">", "value": 5},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.triggered_by_contract is None

    @pytest.mark.asyncio
    async def test_rolling_aggregate_per_contract(
        self, detector, make_event, seed_events
    ) -> None:
        await seed_events(
            make_event(contract=CONTRACT_A, timestamp=minutes_ago(1), data={"value": "100"}),
            make_event(contract=CONTRACT_B, timestamp=minutes_ago(1), data={"value": "5000"}),
        )
        subscription = make_subscription(
            {
                "type": "rolling_aggregate",
                "event_type": "erc20_transfer",
                "window": "1h",
                "contracts": [CONTRACT_A, CONTRACT_B],
                "field": "value",
                "aggregation": "sum",
                "condition": {"operator": ">", "value": 1000},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.triggered_by_contract == CONTRACT_B
        assert result.aggregated_value == pytest.approx(5000)


class TestRollingAggregate:
    async def _seed_values(self, make_event, seed_events, *values: Any) -> None:
        await seed_events(
            *[make_event(timestamp=minutes_ago(1), data={"value": v}) for v in values]
        )

    def config(self, aggregation: str, operator: str, value: float) -> dict[str, Any]:
        return {
            "type": "rolling_aggregate",
            "event_type": "erc20_transfer",
            "window": "1h",
            "field": "value",
            "aggregation": aggregation,
            "condition": {"operator": operator, "value": value},
        }

    @pytest.mark.asyncio
    async def test_sum_of_string_encoded_amounts(
        self, detector, make_event, seed_events
    ) -> None:
        await self._seed_values(make_event, seed_events, "600000", "500000")

        result = await detector.detect(make_subscription(self.config("sum", ">", 1_000_000)))

        assert result.triggered is True
        assert result.aggregated_value == pytest.approx(1_100_000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("aggregation", "expected"),
        [("avg", 20.0), ("min", 10.0), ("max", 30.0)],
    )
    async def test_other_aggregations(
        self, detector, make_event, seed_events, aggregation: str, expected: float
    ) -> None:
        await self._seed_values(make_event, seed_events, 10, 20, 30)

        result = await detector.detect(make_subscription(self.config(aggregation, "=", expected)))

        assert result.aggregated_value == pytest.approx(expected)
        assert result.triggered is True

    @pytest.mark.asyncio
    async def test_empty_window_aggregates_to_zero(self, detector) -> None:
        result = await detector.detect(make_subscription(self.config("sum", "=", 0)))

        assert result.triggered is True
        assert result.aggregated_value == 0.0

    @pytest.mark.asyncio
    async def test_count_aggregation_fails_closed(
        self, detector, make_event, seed_events, caplog
    ) -> None:
        await self._seed_values(make_event, seed_events, 1, 2, 3)

        with caplog.at_level(logging.ERROR, logger="telltide.detector.meta_event"):
            result = await detector.detect(make_subscription(self.config("count", ">", 0)))

        assert result.triggered is False
        assert "Use event_count type for count aggregation" in caplog.text

    @pytest.mark.asyncio
    async def test_market_id_filter(self, detector, make_event, seed_events) -> None:
        await seed_events(
            make_event("morpho_supply", timestamp=minutes_ago(1), data={"market_id": MARKET_1, "assets": "700"}),
            make_event("morpho_supply", timestamp=minutes_ago(1), data={"market_id": MARKET_2, "assets": "900"}),
        )
        subscription = make_subscription(
            {
                "type": "rolling_aggregate",
                "event_type": "morpho_supply",
                "window": "1h",
                "market_id": MARKET_1.upper().replace("0X", "0x"),
                "field": "assets",
                "aggregation": "sum",
                "condition": {"operator": ">", "value": 0},
            }
        )

        result = await detector.detect(subscription)

        assert result.aggregated_value == pytest.approx(700)


class TestNetAggregate:
    def config(self, **overrides: Any) -> dict[str, Any]:
        raw: dict[str, Any] = {
            "type": "net_aggregate",
            "event_type": "morpho_supply",
            "positive_event_type": "morpho_supply",
            "negative_event_type": "morpho_withdraw",
            "window": "1h",
            "field": "assets",
            "aggregation": "sum",
            "condition": {"operator": "<", "value": -500000},
        }
        raw.update(overrides)
        return raw

    @pytest.mark.asyncio
    async def test_net_outflow_triggers(self, detector, make_event, seed_events) -> None:
        await seed_events(
            make_event("morpho_supply", timestamp=minutes_ago(5), data={"assets": "400000"}),
            make_event("morpho_supply", timestamp=minutes_ago(5), data={"assets": "600000"}),
            make_event("morpho_withdraw", timestamp=minutes_ago(3), data={"assets": "1800000"}),
        )

        result = await detector.detect(make_subscription(self.config()))

        assert result.triggered is True
        assert result.aggregated_value == pytest.approx(-800_000)
        assert result.threshold == -500000

    @pytest.mark.asyncio
    async def test_net_inflow_does_not_trigger(self, detector, make_event, seed_events) -> None:
        await seed_events(
            make_event("morpho_supply", timestamp=minutes_ago(5), data={"assets": "900"}),
            make_event("morpho_withdraw", timestamp=minutes_ago(5), data={"assets": "100"}),
        )

        result = await detector.detect(make_subscription(self.config()))

        assert result.triggered is False
        assert result.aggregated_value == pytest.approx(800)

    @pytest.mark.asyncio
    async def test_lookback_shares_one_block_floor(
        self, detector, make_event, seed_events
    ) -> None:
        old = minutes_ago(60 * 24 * 3)
        await seed_events(
            make_event("morpho_supply", block=250, timestamp=old, data={"assets": "100"}),
            make_event("morpho_withdraw", block=295, timestamp=old, data={"assets": "40"}),
            make_event("morpho_withdraw", block=300, timestamp=old, data={"assets": "0"}),
        )
        # Floor is 300 - 10 = 290 for both sides, so the block-250 supply is excluded.
        subscription = make_subscription(
            self.config(lookback_blocks=10, condition={"operator": "<", "value": 0})
        )

        result = await detector.detect(subscription)

        assert result.triggered is True
        assert result.aggregated_value == pytest.approx(-40)


class TestBlockLookback:
    @pytest.mark.asyncio
    async def test_lookback_replaces_time_window(
        self, detector, make_event, seed_events
    ) -> None:
        old = minutes_ago(60 * 24 * 2)
        await seed_events(*[make_event(block=b, timestamp=old) for b in range(100, 111)])
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "lookback_blocks": 5,
                "condition": {"operator": ">=", "value": 6},
            }
        )

        result = await detector.detect(subscription)

        # Blocks 105..110 inclusive; the 5m window would have matched nothing.
        assert result.event_count == 6
        assert result.triggered is True


class TestFailClosed:
    @pytest.mark.asyncio
    async def test_invalid_window(self, detector, caplog) -> None:
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5x",
                "condition": {"operator": ">", "value": -1},
            }
        )

        with caplog.at_level(logging.ERROR, logger="telltide.detector.meta_event"):
            result = await detector.detect(subscription)

        assert result.triggered is False
        assert result.window == "5x"
        assert "Invalid window format" in caplog.text

    @pytest.mark.asyncio
    async def test_store_failure(self) -> None:
        @asynccontextmanager
        async def broken_scope():
            raise ConnectionError("database is down")
            yield  # pragma: no cover

        detector = MetaEventDetector(broken_scope)
        subscription = make_subscription(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "5m",
                "condition": {"operator": ">", "value": -1},
            }
        )

        result = await detector.detect(subscription)

        assert result.triggered is False


class TestRelevantEvents:
    @pytest.mark.asyncio
    async def test_newest_first_within_window(self, detector, make_event, seed_events) -> None:
        await seed_events(
            make_event(contract=CONTRACT_A, timestamp=minutes_ago(3), data={"n": 1}),
            make_event(contract=CONTRACT_A, timestamp=minutes_ago(1), data={"n": 2}),
            make_event(contract=CONTRACT_B, timestamp=minutes_ago(1), data={"n": 3}),
            make_event(contract=CONTRACT_A, timestamp=minutes_ago(90), data={"n": 4}),
        )
        config = parse_meta_event_config(
            {
                "type": "event_count",
                "event_type": "erc20_transfer",
                "window": "1h",
                "contract_address": CONTRACT_A,
                "condition": {"operator": ">", "value": 0},
            }
        )

        events = await detector.relevant_events(config, limit=10)

        assert [e.data["n"] for e in events] == [2, 1]
        assert all(e.contract_address == CONTRACT_A.lower() for e in events)
