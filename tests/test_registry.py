import pytest

from chorus.agents.registry import ResponderRegistry
from tests.helpers.stubs import StubResponder


def test_register_and_lookup():
    registry = ResponderRegistry([StubResponder("a"), StubResponder("b")])

    assert len(registry) == 2
    assert "a" in registry
    assert registry.get("b").id == "b"
    assert registry.get("missing") is None
    assert [responder.id for responder in registry.all()] == ["a", "b"]


def test_register_same_id_replaces_existing():
    registry = ResponderRegistry([StubResponder("a", content="old")])
    replacement = StubResponder("a", content="new")

    registry.register(replacement)

    assert len(registry) == 1
    assert registry.get("a") is replacement


def test_register_requires_id():
    with pytest.raises(ValueError):
        ResponderRegistry().register(StubResponder(""))


def test_unregister_reports_presence():
    registry = ResponderRegistry([StubResponder("a")])

    assert registry.unregister("a") is True
    assert registry.unregister("a") is False
    assert len(registry) == 0


def test_discover_matches_any_capability():
    registry = ResponderRegistry(
        [
            StubResponder("listener", capabilities={"empathy"}),
            StubResponder("comic", capabilities={"humor"}),
            StubResponder("sage", capabilities={"analysis", "empathy"}),
        ]
    )

    assert [responder.id for responder in registry.discover(["empathy"])] == ["listener", "sage"]
    assert [responder.id for responder in registry.discover(["humor", "analysis"])] == ["comic", "sage"]
    assert len(registry.discover([])) == 3


def test_snapshot_is_stable_while_registry_changes():
    registry = ResponderRegistry([StubResponder("a")])
    snapshot = registry.all()

    registry.register(StubResponder("b"))

    assert [responder.id for responder in snapshot] == ["a"]
    assert len(registry) == 2
