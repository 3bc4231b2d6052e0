"""Tests for map construction of configuration entities."""

import pytest

from syncledger.errors import FieldValidationError
from syncledger.models import (
    ErrorRule,
    Event,
    EventSubscription,
    MappingRule,
    RuleTiming,
    SubscriptionStatus,
    SubscriptionStyle,
    Synchronization,
    SynchronizationLog,
    MIN_LOG_SIZE,
    rule_from_map,
)


class TestSynchronizationFromMap:
    """Test Synchronization.from_map."""

    def test_accepts_camel_case(self) -> None:
        """Test camelCase keys are accepted."""
        sync = Synchronization.from_map({
            "id": "s1",
            "source": {"type": "jsonl", "location": "people.jsonl", "idField": "uid"},
            "target": {"type": "directory", "location": "out", "requiredFields": ["name"]},
            "intervalSeconds": 300,
            "deleteOrphans": True,
        })

        assert sync.source.id_field == "uid"
        assert sync.target.required_fields == ["name"]
        assert sync.interval_seconds == 300
        assert sync.delete_orphans is True

    def test_reports_every_problem(self) -> None:
        """Test unknown, missing and badly typed fields are all reported."""
        with pytest.raises(FieldValidationError) as exc_info:
            Synchronization.from_map({
                "id": "s1",
                "source": {"location": "x"},
                "intervalSeconds": "often",
                "colour": "blue",
            })

        problems = exc_info.value.problems
        assert problems["colour"] == "unknown field"
        assert problems["target"] == "required"
        assert problems["source.type"] == "required"
        assert "interval_seconds" in problems

    def test_rejects_non_mapping(self) -> None:
        """Test a list input is rejected."""
        with pytest.raises(FieldValidationError):
            Synchronization.from_map(["id", "s1"])

    def test_to_dict_round_trip(self) -> None:
        """Test to_dict output is accepted by from_map."""
        sync = Synchronization.from_map({
            "id": "s1",
            "source": {"type": "jsonl"},
            "target": {"type": "directory"},
            "mapping": {"mapping": {"name": "person.name"}},
            "rules": [{"id": "r1", "type": "error", "configuration": {"message": "no"}}],
        })

        assert Synchronization.from_map(sync.to_dict()) == sync


class TestRules:
    """Test tagged-union rule decoding."""

    def test_mapping_rule(self) -> None:
        """Test a mapping rule decodes its nested configuration."""
        rule = rule_from_map({
            "id": "r1",
            "type": "mapping",
            "timing": "after",
            "configuration": {"mapping": {"mapping": {"a": "b"}, "passThrough": True}},
        })

        assert isinstance(rule, MappingRule)
        assert rule.timing == RuleTiming.AFTER
        assert rule.mapping.pass_through is True

    def test_error_rule_name(self) -> None:
        """Test the configured error name is kept."""
        rule = rule_from_map({
            "id": "r1",
            "type": "error",
            "configuration": {"code": 422, "name": "Unprocessable", "message": "bad"},
        })

        assert isinstance(rule, ErrorRule)
        assert rule.code == 422
        assert rule.error_name == "Unprocessable"

    def test_unknown_type(self) -> None:
        """Test an unknown rule type is rejected."""
        with pytest.raises(FieldValidationError) as exc_info:
            rule_from_map({"id": "r1", "type": "webhook"})
        assert "type" in exc_info.value.problems

    def test_unknown_configuration_field(self) -> None:
        """Test configuration fields are checked per variant."""
        with pytest.raises(FieldValidationError) as exc_info:
            rule_from_map({"id": "r1", "type": "script", "configuration": {"script": "x", "lang": "py"}})
        assert exc_info.value.problems == {"lang": "unknown field"}

    def test_rules_sorted_by_order(self) -> None:
        """Test rules of a synchronization are kept in order."""
        sync = Synchronization.from_map({
            "id": "s1",
            "source": {"type": "jsonl"},
            "target": {"type": "directory"},
            "rules": [
                {"id": "late", "type": "synchronization", "order": 5,
                 "configuration": {"synchronizationId": "s2"}},
                {"id": "early", "type": "synchronization", "order": 1,
                 "configuration": {"synchronizationId": "s3"}},
            ],
        })
        assert [rule.id for rule in sync.rules] == ["early", "late"]


class TestEventSubscription:
    """Test subscription construction and matching."""

    def test_push_requires_sink(self) -> None:
        """Test push subscriptions need a sink."""
        with pytest.raises(FieldValidationError) as exc_info:
            EventSubscription.from_map({"reference": "crm"})
        assert "sink" in exc_info.value.problems

    def test_pull_without_sink(self) -> None:
        """Test pull subscriptions do not need a sink."""
        sub = EventSubscription.from_map({"reference": "crm", "style": "pull"})
        assert sub.style == SubscriptionStyle.PULL

    def test_matches_type_source_and_filters(self) -> None:
        """Test event matching."""
        sub = EventSubscription(
            reference="crm",
            sink="https://example.com",
            types=["syncledger.contract.created"],
            filters={"synchronization_id": "people"},
        )
        event = Event(
            type="syncledger.contract.created",
            source="syncledger/synchronizations/people",
            data={"synchronization_id": "people"},
        )

        assert sub.matches(event)
        assert not sub.matches(Event(type="syncledger.contract.deleted", source="x", data=event.data))
        assert not sub.matches(Event(type=event.type, source="x", data={"synchronization_id": "other"}))

        sub.status = SubscriptionStatus.GONE
        assert not sub.matches(event)


class TestLogSize:
    """Test log size calculation."""

    def test_size_has_floor(self) -> None:
        """Test small logs are reported at the minimum size."""
        log = SynchronizationLog(synchronization_id="s1")
        assert log.calculate_size() == MIN_LOG_SIZE

    def test_size_grows_with_content(self) -> None:
        """Test large results are measured."""
        log = SynchronizationLog(synchronization_id="s1", result={"errors": ["x" * 10000]})
        assert log.calculate_size() > 10000
