"""Tests for condition predicates and the condition evaluator."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from automation_hub.automation.conditions import (
    BUILTIN_CONDITIONS,
    ConditionEvaluator,
    file_pattern_condition,
    keyword_condition,
    sender_condition,
    time_range_condition,
)
from automation_hub.automation.registry import HandlerKind, TypeRegistry
from automation_hub.core.config import ConditionSpec


@pytest.fixture
def evaluator():
    registry = TypeRegistry()
    for name, predicate in BUILTIN_CONDITIONS.items():
        registry.register(HandlerKind.CONDITION, name, predicate)
    return ConditionEvaluator(registry)


class TestKeywordCondition:
    def test_contains(self):
        spec = {"type": "keyword", "match": "contains", "value": "world"}
        assert keyword_condition(spec, {"text": "Hello world"}) is True

    def test_contains_missing_value(self):
        spec = {"type": "keyword", "match": "contains", "value": "foo"}
        assert keyword_condition(spec, {"text": "Hello world"}) is False

    def test_not_contains(self):
        spec = {"type": "keyword", "match": "not_contains", "value": "spam"}
        assert keyword_condition(spec, {"text": "Quarterly report"}) is True
        assert keyword_condition(spec, {"text": "spam offer"}) is False

    def test_default_match_is_contains(self):
        assert keyword_condition({"type": "keyword", "value": "ok"}, {"text": "all ok"}) is True

    def test_missing_text(self):
        spec = {"type": "keyword", "match": "contains", "value": "x"}
        assert keyword_condition(spec, {}) is False


class TestTimeRangeCondition:
    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            ("09:00", True),
            ("12:30", True),
            ("17:00", True),
            ("08:59", False),
            ("17:01", False),
        ],
    )
    def test_daytime_range_is_inclusive(self, now, expected):
        spec = {"type": "time_range", "start": "09:00", "end": "17:00"}
        moment = datetime.strptime(f"2024-05-01 {now}:30", "%Y-%m-%d %H:%M:%S")

        assert time_range_condition(spec, {}, now=moment) is expected

    @pytest.mark.parametrize(
        ("now", "expected"),
        [("23:30", True), ("02:00", True), ("06:00", True), ("12:00", False)],
    )
    def test_range_crossing_midnight(self, now, expected):
        spec = {"type": "time_range", "start": "22:00", "end": "06:00"}
        moment = datetime.strptime(f"2024-05-01 {now}", "%Y-%m-%d %H:%M")

        assert time_range_condition(spec, {}, now=moment) is expected


class TestSenderCondition:
    def test_matches_exact_sender(self):
        spec = {"type": "sender", "value": "boss@example.com"}

        assert sender_condition(spec, {"sender": "boss@example.com"}) is True
        assert sender_condition(spec, {"sender": "intern@example.com"}) is False
        assert sender_condition(spec, {}) is False


class TestFilePatternCondition:
    def test_matches_basename(self):
        spec = {"type": "file_pattern", "pattern": "*.py"}

        assert file_pattern_condition(spec, {"filePath": "/repo/src/app.py"}) is True
        assert file_pattern_condition(spec, {"filePath": "/repo/README.md"}) is False

    def test_matches_full_path(self):
        spec = {"type": "file_pattern", "value": "/repo/docs/*"}

        assert file_pattern_condition(spec, {"filePath": "/repo/docs/index.md"}) is True

    def test_missing_file_path(self):
        assert file_pattern_condition({"type": "file_pattern", "pattern": "*"}, {}) is False


@pytest.mark.anyio
class TestConditionEvaluator:
    async def test_empty_list_is_true(self, evaluator):
        assert await evaluator.evaluate([], {}) is True

    async def test_all_conditions_must_hold(self, evaluator):
        conditions = [
            {"type": "keyword", "match": "contains", "value": "deploy"},
            {"type": "sender", "value": "ci"},
        ]

        assert await evaluator.evaluate(conditions, {"text": "deploy now", "sender": "ci"}) is True
        assert not await evaluator.evaluate(conditions, {"text": "deploy now", "sender": "bob"})

    async def test_short_circuits_on_first_false(self, evaluator):
        later = MagicMock(return_value=True)
        evaluator.registry.register("condition", "later", later)
        conditions = [{"type": "sender", "value": "ci"}, {"type": "later"}]

        assert await evaluator.evaluate(conditions, {"sender": "bob"}) is False
        later.assert_not_called()

    async def test_unknown_condition_is_skipped(self, evaluator, caplog):
        conditions = [{"type": "moon_phase", "value": "full"}]

        assert await evaluator.evaluate(conditions, {}) is True
        assert "Unknown condition type: moon_phase" in caplog.text

    async def test_async_predicate(self, evaluator):
        async def is_weekday(spec, context):
            return context.get("weekday", False)

        evaluator.registry.register("condition", "weekday", is_weekday)

        assert await evaluator.evaluate([{"type": "weekday"}], {"weekday": True}) is True
        assert await evaluator.evaluate([{"type": "weekday"}], {}) is False

    async def test_accepts_condition_models(self, evaluator):
        condition = ConditionSpec.model_validate(
            {"type": "keyword", "match": "contains", "value": "world"}
        )

        assert await evaluator.evaluate([condition], {"text": "Hello world"}) is True
