"""Tests for per-field policy evaluation."""

import pytest

from converge.core.errors import ConfigurationError
from converge.policy import (
    MISSING,
    ForEach,
    ImmutableWhen,
    Policy,
    evaluate,
    matches_prefix,
)

IMMUTABLE = Policy.IMMUTABLE_RESPONSE
CREATE_ONLY = Policy.CREATE_ONLY


class TestPlainComparison:
    """Fields without a policy are compared by value."""

    def test_equal_values_have_no_drift(self):
        result = evaluate({"size": "s-1vcpu", "count": 2}, {"size": "s-1vcpu", "count": 2})

        assert not result.has_drift
        assert result.payload == {"size": "s-1vcpu", "count": 2}

    def test_changed_scalar_drifts(self):
        result = evaluate({"count": 3}, {"count": 2})

        assert result.drift == ("count",)
        assert result.payload == {"count": 3}

    def test_nested_path_is_rendered(self):
        result = evaluate(
            {"spec": {"ports": [{"port": 80}, {"port": 443}]}},
            {"spec": {"ports": [{"port": 80}, {"port": 8443}]}},
        )

        assert result.drift == ("spec.ports[1].port",)

    def test_extra_live_field_drifts(self):
        result = evaluate({"a": 1}, {"a": 1, "b": 2})

        assert result.drift == ("b",)
        assert result.payload == {"a": 1}

    def test_missing_live_field_drifts(self):
        result = evaluate({"a": 1, "b": 2}, {"a": 1})

        assert result.drift == ("b",)

    def test_type_change_drifts(self):
        result = evaluate({"value": [1]}, {"value": {"x": 1}})

        assert result.drift == ("value",)


class TestImmutableResponse:
    def test_live_value_is_used_and_never_drifts(self):
        result = evaluate(
            {"name": "web", "id": "declared"},
            {"name": "web", "id": "abc-123", "status": {"state": "running"}},
            {"id": IMMUTABLE, "status": IMMUTABLE},
        )

        assert not result.has_drift
        assert result.payload == {"name": "web", "id": "abc-123", "status": {"state": "running"}}

    def test_dropped_from_creation_payload(self):
        result = evaluate({"name": "web", "id": "x"}, MISSING, {"id": IMMUTABLE})

        assert result.payload == {"name": "web"}
        assert result.drift == ()

    def test_string_policy_names_are_accepted(self):
        result = evaluate({"a": 1}, {"a": 1, "uid": "u"}, {"uid": "IMMUTABLE_RESPONSE"})

        assert not result.has_drift


class TestCreateOnly:
    def test_declared_value_kept_but_not_compared(self):
        result = evaluate({"kind": "Deployment"}, {"kind": "Something"}, {"kind": CREATE_ONLY})

        assert not result.has_drift
        assert result.payload == {"kind": "Deployment"}

    def test_sent_on_creation(self):
        result = evaluate({"kind": "Service"}, MISSING, {"kind": CREATE_ONLY})

        assert result.payload == {"kind": "Service"}


class TestImmutableWhen:
    """Arrays where only predicate-matching live elements are server-owned."""

    def test_matching_elements_do_not_drift(self):
        policy = {"tags": matches_prefix("k8s")}
        result = evaluate(
            {"tags": ["web"]},
            {"tags": ["k8s", "k8s:abc", "web"]},
            policy,
        )

        assert not result.has_drift
        assert result.payload == {"tags": ["k8s", "k8s:abc", "web"]}

    def test_non_matching_live_element_drifts(self):
        result = evaluate(
            {"tags": ["web"]},
            {"tags": ["k8s", "db"]},
            {"tags": matches_prefix("k8s")},
        )

        assert result.drift == ("tags",)
        assert result.payload == {"tags": ["k8s", "web"]}

    def test_matching_positions_are_preserved(self):
        result = evaluate(
            {"tags": ["a", "b"]},
            {"tags": ["x", "k8s:1", "y"]},
            {"tags": matches_prefix("k8s")},
        )

        assert result.payload == {"tags": ["a", "k8s:1", "b"]}
        assert result.drift == ("tags",)

    def test_declared_predicate_elements_are_dropped(self):
        result = evaluate(
            {"tags": ["k8s:declared", "web"]},
            {"tags": ["k8s:live", "web"]},
            {"tags": matches_prefix("k8s")},
        )

        assert result.payload == {"tags": ["k8s:live", "web"]}
        assert not result.has_drift

    def test_creation_passes_declared_array_through(self):
        result = evaluate({"tags": ["k8s", "web"]}, MISSING, {"tags": matches_prefix("k8s")})

        assert result.payload == {"tags": ["k8s", "web"]}

    def test_one_element_list_with_callable(self):
        result = evaluate(
            {"tags": []},
            {"tags": ["auto-1"]},
            {"tags": [lambda tag: tag.startswith("auto-")]},
        )

        assert not result.has_drift

    def test_matches_prefix_requires_separator(self):
        when = matches_prefix("k8s")

        assert isinstance(when, ImmutableWhen)
        assert when.matches("k8s")
        assert when.matches("k8s:worker")
        assert not when.matches("k8sfoo")
        assert not when.matches(None)


class TestForEach:
    def test_element_policy_applies_to_every_element(self):
        policy = {"node_pools": ForEach({"id": IMMUTABLE})}
        result = evaluate(
            {"node_pools": [{"name": "a"}, {"name": "b"}]},
            {"node_pools": [{"name": "a", "id": "1"}, {"name": "b", "id": "2"}]},
            policy,
        )

        assert not result.has_drift
        assert result.payload["node_pools"][1] == {"name": "b", "id": "2"}

    def test_one_element_list_means_for_each(self):
        policy = {"ports": [{"nodePort": IMMUTABLE}]}
        result = evaluate(
            {"ports": [{"port": 80}]},
            {"ports": [{"port": 80, "nodePort": 31000}]},
            policy,
        )

        assert not result.has_drift

    def test_element_count_change_drifts(self):
        result = evaluate(
            {"ports": [{"port": 80}, {"port": 443}]},
            {"ports": [{"port": 80}]},
            {"ports": ForEach({})},
        )

        assert result.drift == ("ports[1].port",)


class TestInvalidPolicies:
    def test_unknown_policy_name(self):
        with pytest.raises(ConfigurationError, match="Unknown property policy"):
            evaluate({"a": 1}, {"a": 1}, {"a": "SOMETIMES"})

    def test_multi_element_list(self):
        with pytest.raises(ConfigurationError, match="exactly one"):
            evaluate({"a": [1]}, {"a": [1]}, {"a": [IMMUTABLE, IMMUTABLE]})


def test_declared_input_is_not_mutated():
    declared = {"tags": ["web"], "spec": {"replicas": 1}}
    result = evaluate(declared, {"tags": ["k8s", "web"], "spec": {"replicas": 2}}, {"tags": matches_prefix("k8s")})

    result.payload["spec"]["replicas"] = 5
    assert declared == {"tags": ["web"], "spec": {"replicas": 1}}
