"""Tests for the reconciliation walk."""

import pytest
from fakes import Exploding, FakeCreatable, FakeReadOnly, FakeSingleton, FakeStore, NamedStore

from converge.core.errors import CapabilityMissingError, HandlerError, PolicyViolationError
from converge.engine import ActionKind, Parents, Reconciler, apply
from converge.policy import ForEach, Policy, matches_prefix

IMMUTABLE = Policy.IMMUTABLE_RESPONSE


def kinds(result):
    return [(action.path, action.name, action.kind) for action in result.actions]


class TestCreateAndCompare:
    @pytest.mark.asyncio
    async def test_missing_item_is_created(self):
        store = FakeStore(property_options={"id": IMMUTABLE})

        result = await apply({"@things": {"a": {"size": 1}}}, {"things": store})

        assert store.created == {"a": {"size": 1}}
        assert result.config_after == {"@things": {"a": {"size": 1, "id": "id-1"}}}
        assert kinds(result) == [("@things", "a", ActionKind.CREATE)]

    @pytest.mark.asyncio
    async def test_second_pass_makes_no_mutating_calls(self):
        store = FakeStore(property_options={"id": IMMUTABLE, "tags": matches_prefix("k8s")})
        declaration = {"@things": {"a": {"size": 1, "tags": ["web"]}}}
        handlers = {"things": store}

        await apply(declaration, handlers)
        store.items["a"]["tags"] = ["k8s", "web"]
        store.calls.clear()

        result = await apply(declaration, handlers)

        assert store.mutations == []
        assert not result.has_changes
        assert result.summary()["unchanged"] == 1

    @pytest.mark.asyncio
    async def test_creation_payload_drops_immutable_fields(self):
        store = FakeStore(property_options={"id": IMMUTABLE, "status": IMMUTABLE, "kind": Policy.CREATE_ONLY})

        await apply({"@things": {"a": {"id": "mine", "status": "x", "kind": "Thing"}}}, {"things": store})

        assert store.created["a"] == {"kind": "Thing"}

    @pytest.mark.asyncio
    async def test_immutable_fields_never_trigger_update(self):
        store = FakeStore(
            {"a": {"size": 1, "id": "srv-1", "status": {"state": "running"}}},
            property_options={"id": IMMUTABLE, "status": IMMUTABLE},
        )

        result = await apply({"@things": {"a": {"size": 1}}}, {"things": store})

        assert store.mutations == []
        assert result.actions[0].kind == ActionKind.UNCHANGED

    @pytest.mark.asyncio
    async def test_drift_updates_with_effective_payload(self):
        store = FakeStore(
            {"a": {"size": 1, "id": "srv-1", "tags": ["k8s:1", "old"]}},
            property_options={"id": IMMUTABLE, "tags": matches_prefix("k8s")},
        )

        result = await apply({"@things": {"a": {"size": 2, "tags": ["new"]}}}, {"things": store})

        assert store.updated["a"] == {"size": 2, "id": "srv-1", "tags": ["k8s:1", "new"]}
        assert result.actions[0].kind == ActionKind.UPDATE
        assert set(result.actions[0].drift) == {"size", "tags"}

    @pytest.mark.asyncio
    async def test_array_element_policies(self):
        store = FakeStore(
            {"a": {"pools": [{"name": "p", "id": "1"}]}},
            property_options={"pools": ForEach({"id": IMMUTABLE})},
        )

        await apply({"@things": {"a": {"pools": [{"name": "p"}]}}}, {"things": store})

        assert store.mutations == []


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_missing_create_is_fatal(self):
        with pytest.raises(CapabilityMissingError, match="cannot be created"):
            await apply({"@things": {"a": {}}}, {"things": FakeReadOnly()})

    @pytest.mark.asyncio
    async def test_missing_update_is_fatal(self):
        handler = FakeCreatable({"a": {"size": 1}})

        with pytest.raises(CapabilityMissingError, match="cannot be updated"):
            await apply({"@things": {"a": {"size": 2}}}, {"things": handler})

    @pytest.mark.asyncio
    async def test_read_only_match_is_fine(self):
        handler = FakeReadOnly({"example.com": {"ttl": 1800}})

        result = await apply({"@domains": {"example.com": {"ttl": 1800}}}, {"domains": handler})

        assert result.actions[0].kind == ActionKind.UNCHANGED

    @pytest.mark.asyncio
    async def test_extras_without_delete_are_unmanaged(self):
        handler = FakeCreatable({"stray": {"x": 1}})

        result = await apply({"@things": {}}, {"things": handler})

        assert handler.mutations == []
        assert kinds(result) == [("@things", "stray", ActionKind.UNMANAGED)]
        assert result.config_after == {"@things": {"stray": {"x": 1}}}

    @pytest.mark.asyncio
    async def test_extras_are_deleted(self):
        store = FakeStore({"keep": {"x": 1}, "stray": {"x": 2}})

        result = await apply({"@things": {"keep": {"x": 1}}}, {"things": store})

        assert store.mutations == [("delete", "stray")]
        assert result.config_after == {"@things": {"keep": {"x": 1}}}
        assert result.find("@things").before == {"keep": {"x": 1}, "stray": {"x": 2}}

    @pytest.mark.asyncio
    async def test_unregistered_collection(self):
        with pytest.raises(CapabilityMissingError, match="No handler"):
            await apply({"@unknown": {}}, {})


class TestIgnoreKeys:
    @pytest.mark.asyncio
    async def test_ignored_live_items_are_untouched_and_hidden(self):
        store = FakeStore({"kube-dns": {"x": 1}}, ignore_keys={"kube-dns"})

        result = await apply({"@things": {}}, {"things": store})

        assert store.mutations == []
        assert result.actions == []
        assert result.config_after == {"@things": {}}

    @pytest.mark.asyncio
    async def test_declared_ignored_items_are_skipped(self):
        store = FakeStore(ignore_keys={"kube-dns"})

        result = await apply({"@things": {"kube-dns": {"x": 1}}}, {"things": store})

        assert store.mutations == []
        assert result.actions == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_fail_fast_without_rollback(self):
        store = Exploding(fail_on="b")

        with pytest.raises(HandlerError, match="create failed") as exc_info:
            await apply({"@things": {"a": {}, "b": {}, "c": {}}}, {"things": store})

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "a" in store.items
        assert "c" not in store.items
        assert store.mutations == [("create", "a"), ("create", "b")]

    @pytest.mark.asyncio
    async def test_nested_failure_stops_the_whole_walk(self):
        log = []
        parents_store = FakeStore(label="a", log=log)
        children = Exploding(fail_on="c", label="child", log=log)
        later = FakeStore(label="b", log=log)
        declaration = {
            "@a": {"x": {"@child": {"c": {}}}, "y": {"@child": {"d": {}}}},
            "@b": {"z": {}},
        }

        with pytest.raises(HandlerError, match="create failed"):
            await apply(declaration, {"a": parents_store, "child": children, "b": later})

        assert log == [
            ("a", "get", None),
            ("a", "create", "x"),
            ("a", "create", "y"),
            ("child", "get", None),
            ("child", "create", "c"),
        ]
        assert children.calls.count(("get", None)) == 1
        assert later.calls == []

    @pytest.mark.asyncio
    async def test_identity_mismatch(self):
        store = NamedStore()

        with pytest.raises(PolicyViolationError, match="must match"):
            await apply({"@things": {"a": {"metadata": {"name": "b"}}}}, {"things": store})

        assert store.mutations == []

    @pytest.mark.asyncio
    async def test_identity_match(self):
        store = NamedStore()

        await apply({"@things": {"a": {"metadata": {"name": "a"}}}}, {"things": store})

        assert store.mutations == [("create", "a")]

    @pytest.mark.asyncio
    async def test_handler_returning_nothing(self):
        class Silent(FakeStore):
            async def create(self, name, config, parents):
                return None

        with pytest.raises(HandlerError, match="no live state"):
            await apply({"@things": {"a": {}}}, {"things": Silent()})


class TestTreeWalk:
    @pytest.mark.asyncio
    async def test_order_and_parents_chain(self):
        log = []
        parents_store = FakeStore(label="parents", log=log)
        children = FakeStore({"old": {}}, label="children", log=log)
        declaration = {
            "@parents": {
                "p1": {"@children": {"c1": {}}},
                "p2": {"@children": {"c2": {}}},
            }
        }

        await apply(declaration, {"parents": parents_store, "children": children})

        assert log == [
            ("parents", "get", None),
            ("parents", "create", "p1"),
            ("parents", "create", "p2"),
            ("children", "get", None),
            ("children", "create", "c1"),
            ("children", "delete", "old"),
            ("children", "get", None),
            ("children", "create", "c2"),
            ("children", "delete", "c1"),
        ]
        first, second = children.seen_parents
        assert first["parents"]["id"] == "id-1"
        assert second["parents"]["id"] == "id-2"
        assert first.names() == ["p1"]

    @pytest.mark.asyncio
    async def test_singleton_collection(self):
        log = []
        access = {"namespace": "apps"}
        singleton = FakeSingleton(access, log=log)
        workloads = FakeStore(label="workloads", log=log)
        declaration = {"@clusters": {"dev": {"@access": {"@workloads": {"web": {"replicas": 1}}}}}}

        result = await apply(
            declaration,
            {"clusters": FakeStore(), "access": singleton, "workloads": workloads},
        )

        assert workloads.seen_parents[0]["access"] == access
        assert workloads.seen_parents[0]["clusters"]["id"] == "id-1"
        assert result.config_after["@clusters/dev/@access"] == access
        assert result.config_after["@clusters/dev/@access/@workloads"] == {"web": {"replicas": 1, "id": "id-1"}}

    @pytest.mark.asyncio
    async def test_initial_parents(self):
        store = FakeStore()
        parents = Parents().extend("accounts", "main", {"token": "t"})

        await Reconciler({"things": store}).apply({"@things": {}}, parents=parents)

        assert store.seen_parents[0]["accounts"] == {"token": "t"}

    @pytest.mark.asyncio
    async def test_children_of_deleted_items_are_not_visited(self):
        store = FakeStore({"gone": {}})
        children = FakeStore()

        result = await apply({"@things": {}}, {"things": store, "children": children})

        assert children.calls == []
        assert list(result.config_after) == ["@things"]


class TestDryRun:
    @pytest.mark.asyncio
    async def test_plans_without_mutating(self):
        store = FakeStore({"a": {"size": 1}, "stray": {}})
        children = FakeStore()
        declaration = {
            "@things": {
                "a": {"size": 2},
                "new": {"@children": {"c": {}}},
            }
        }

        result = await Reconciler({"things": store, "children": children}, dry_run=True).apply(declaration)

        assert store.mutations == []
        assert children.calls == []
        assert result.dry_run
        assert all(action.planned for action in result.changes)
        assert kinds(result) == [
            ("@things", "a", ActionKind.UPDATE),
            ("@things", "new", ActionKind.CREATE),
            ("@things", "stray", ActionKind.DELETE),
        ]
        assert result.summary() == {"create": 1, "update": 1, "delete": 1, "unchanged": 0, "unmanaged": 0}

    @pytest.mark.asyncio
    async def test_reports_capability_problems(self):
        with pytest.raises(CapabilityMissingError):
            await Reconciler({"things": FakeReadOnly()}, dry_run=True).apply({"@things": {"a": {}}})


@pytest.mark.asyncio
async def test_config_before_and_after_keys():
    store = FakeStore({"a": {"v": 1}})
    children = FakeStore()

    result = await apply(
        {"@things": {"a": {"v": 1, "@children": {"c": {}}}}},
        {"things": store, "children": children},
    )

    assert list(result.config_after) == ["@things", "@things/a/@children"]
    assert result.config_before["@things/a/@children"] == {}
    assert result.config_after["@things/a/@children"] == {"c": {"id": "id-1"}}
