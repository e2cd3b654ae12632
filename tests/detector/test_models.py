"""Tests for detector data models."""

from __future__ import annotations

import pytest

from telltide.detector.models import (
    DEFAULT_CHAIN,
    Condition,
    DetectionResult,
    EventCountConfig,
    InvalidMetaEventConfig,
    NetAggregateConfig,
    RollingAggregateConfig,
    Subscription,
    parse_meta_event_config,
)
from telltide.storage.repos import SubscriptionDTO


def count_config(**overrides):
    raw = {
        "type": "event_count",
        "event_type": "erc20_transfer",
        "window": "1h",
        "condition": {"operator": ">", "value": 5},
    }
    raw.update(overrides)
    return raw


class TestParseMetaEventConfig:
    def test_event_count(self) -> None:
        config = parse_meta_event_config(count_config())

        assert isinstance(config, EventCountConfig)
        assert config.chain == DEFAULT_CHAIN
        assert config.lookback_blocks is None
        assert config.condition.threshold == 5.0

    def test_rolling_aggregate(self) -> None:
        config = parse_meta_event_config(
            count_config(type="rolling_aggregate", field="value", aggregation="sum")
        )

        assert isinstance(config, RollingAggregateConfig)
        assert config.field == "value"
        assert config.aggregation == "sum"

    def test_net_aggregate(self) -> None:
        config = parse_meta_event_config(
            count_config(
                type="net_aggregate",
                field="assets",
                aggregation="sum",
                positive_event_type="erc4626_deposit",
                negative_event_type="erc4626_withdraw",
            )
        )

        assert isinstance(config, NetAggregateConfig)
        assert config.positive_event_type == "erc4626_deposit"
        assert config.negative_event_type == "erc4626_withdraw"

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(InvalidMetaEventConfig):
            parse_meta_event_config(count_config(type="moving_average"))

    def test_missing_field_rejected(self) -> None:
        raw = count_config(type="rolling_aggregate", aggregation="sum")
        with pytest.raises(InvalidMetaEventConfig):
            parse_meta_event_config(raw)

    def test_non_positive_lookback_rejected(self) -> None:
        with pytest.raises(InvalidMetaEventConfig):
            parse_meta_event_config(count_config(lookback_blocks=0))

    def test_unknown_keys_ignored(self) -> None:
        config = parse_meta_event_config(count_config(description="from the dashboard"))
        assert isinstance(config, EventCountConfig)


class TestContractTargets:
    def test_contracts_list_preserves_order(self) -> None:
        config = parse_meta_event_config(count_config(contracts=["0xb", "0xa", "0xc"]))
        assert config.contract_targets() == ["0xb", "0xa", "0xc"]

    def test_single_contract_address(self) -> None:
        config = parse_meta_event_config(count_config(contract_address="0xa"))
        assert config.contract_targets() == ["0xa"]

    def test_contracts_take_precedence(self) -> None:
        config = parse_meta_event_config(
            count_config(contracts=["0xb"], contract_address="0xa")
        )
        assert config.contract_targets() == ["0xb"]

    def test_no_contract_filter(self) -> None:
        config = parse_meta_event_config(count_config(contracts=[]))
        assert config.contract_targets() is None


class TestConditionThreshold:
    def test_numeric_value(self) -> None:
        assert Condition(operator=">", value=1.5).threshold == 1.5

    def test_integer_value(self) -> None:
        condition = Condition(operator=">", value=10)
        assert condition.threshold == 10.0
        assert isinstance(condition.threshold, float)

    def test_string_value_is_zero(self) -> None:
        assert Condition(operator=">", value="high").threshold == 0.0


class TestSubscriptionFromDto:
    def make_dto(self, cooldown_minutes: int | None) -> SubscriptionDTO:
        return SubscriptionDTO(
            id="sub-1",
            user_id="user-1",
            name="Whale watch",
            webhook_url="https://hooks.example.com/x",
            meta_event_config=count_config(),
            cooldown_minutes=cooldown_minutes,
        )

    def test_uses_stored_cooldown(self) -> None:
        subscription = Subscription.from_dto(self.make_dto(10))
        assert subscription.cooldown_minutes == 10
        assert isinstance(subscription.config, EventCountConfig)

    def test_missing_cooldown_uses_default(self) -> None:
        subscription = Subscription.from_dto(self.make_dto(None), default_cooldown_minutes=3)
        assert subscription.cooldown_minutes == 3

    def test_zero_cooldown_kept(self) -> None:
        subscription = Subscription.from_dto(self.make_dto(0), default_cooldown_minutes=3)
        assert subscription.cooldown_minutes == 0


class TestDetectionResult:
    def test_observed_value_prefers_aggregate(self) -> None:
        result = DetectionResult(triggered=True, window="1h", event_count=3, aggregated_value=7.5)
        assert result.observed_value == 7.5

    def test_observed_value_from_count(self) -> None:
        result = DetectionResult(triggered=True, window="1h", event_count=3)
        assert result.observed_value == 3.0

    def test_observed_value_none(self) -> None:
        assert DetectionResult(triggered=False, window="1h").observed_value is None
