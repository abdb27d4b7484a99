import pytest

from crisp.crisp_bindings import BindingSpace, BindingsManager
from crisp.crisp_errors import BindingExists


def test_lookup_walks_up_and_writes_stay_local():
    b = BindingsManager()
    b.set(BindingSpace.USER, "$x", 1)
    with b.scoped():
        assert b.get(BindingSpace.USER, "$x") == 1
        b.set(BindingSpace.USER, "$x", 2)
        b.set(BindingSpace.USER, "$y", 3)
        assert b.get(BindingSpace.USER, "$x") == 2
        assert b.has(BindingSpace.USER, "$x", local=True)
    assert b.get(BindingSpace.USER, "$x") == 1
    assert not b.has(BindingSpace.USER, "$y")
    assert b.get(BindingSpace.USER, "$y", default="missing") == "missing"


def test_spaces_are_independent():
    b = BindingsManager()
    b.set(BindingSpace.ADDR, "vault", "0x" + "1" * 40)
    assert b.has(BindingSpace.ADDR, "vault")
    assert not b.has(BindingSpace.USER, "vault")


def test_exit_scope_must_be_balanced():
    b = BindingsManager()
    with pytest.raises(RuntimeError):
        b.exit_scope()
    outer = b.enter_scope()
    b.enter_scope()
    with pytest.raises(RuntimeError):
        b.exit_scope(outer)


def test_scoped_restores_on_error():
    b = BindingsManager()
    with pytest.raises(ValueError):
        with b.scoped():
            raise ValueError("boom")
    assert b.current is b.root


def test_guarded_set_refuses_redefinition():
    b = BindingsManager()
    b.set(BindingSpace.ADDR, "agent", "a", guard=True)
    with pytest.raises(BindingExists):
        b.set(BindingSpace.ADDR, "agent", "b", guard=True)
    with b.scoped():
        b.set(BindingSpace.ADDR, "agent", "c", guard=True)
        assert b.get(BindingSpace.ADDR, "agent") == "c"


def test_identifiers_nearest_first():
    b = BindingsManager()
    b.set(BindingSpace.USER, "$a", 1)
    b.set(BindingSpace.USER, "$b", 2)
    with b.scoped():
        b.set(BindingSpace.USER, "$c", 3)
        b.set(BindingSpace.USER, "$a", 4)
        assert b.all_identifiers([BindingSpace.USER]) == ["$c", "$a", "$b"]


def test_snapshot_is_frozen():
    b = BindingsManager()
    b.set(BindingSpace.USER, "$a", 1)
    with b.scoped():
        b.set(BindingSpace.USER, "$a", 2)
        snap = b.snapshot()
    b.set(BindingSpace.USER, "$z", 9)
    assert snap.get(BindingSpace.USER, "$a") == 2
    assert not snap.has(BindingSpace.USER, "$z")
    assert snap.values(BindingSpace.USER) == [2]
    assert snap.all_identifiers([BindingSpace.USER]) == ["$a"]
