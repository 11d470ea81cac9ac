from collections import OrderedDict

import pytest

from provisioning.units import (
    CycleDetected,
    DuplicateDependency,
    DuplicateUnit,
    UnitDescriptor,
    UnitSet,
    UnknownDependency,
    ValidationError,
)


def names(units):
    return [unit.name for unit in units]


def test_acyclic_set_validates(staking_units):
    staking_units.validate()
    assert len(staking_units) == 3
    assert staking_units.names == ["Token", "Collectible", "Staking"]
    assert "Staking" in staking_units
    assert staking_units.get("Missing") is None


def test_empty_set_validates():
    units = UnitSet([])
    units.validate()
    assert units.topological_order() == []


def test_cycle_is_detected():
    units = UnitSet(
        [
            UnitDescriptor(name="A", template="a", depends_on=("C",)),
            UnitDescriptor(name="B", template="b", depends_on=("A",)),
            UnitDescriptor(name="C", template="c", depends_on=("B",)),
            UnitDescriptor(name="D", template="d"),
        ]
    )
    with pytest.raises(CycleDetected) as exc_info:
        units.validate()

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"A", "B", "C"}
    assert isinstance(exc_info.value, ValidationError)


def test_self_dependency_is_a_cycle():
    units = UnitSet([UnitDescriptor(name="A", template="a", depends_on=("A",))])
    with pytest.raises(CycleDetected) as exc_info:
        units.validate()
    assert exc_info.value.cycle == ["A", "A"]


def test_cycle_prevents_ordering():
    units = UnitSet(
        [
            UnitDescriptor(name="A", template="a", depends_on=("B",)),
            UnitDescriptor(name="B", template="b", depends_on=("A",)),
        ]
    )
    with pytest.raises(CycleDetected):
        units.topological_order()


def test_unknown_dependency():
    units = UnitSet([UnitDescriptor(name="Staking", template="staking", depends_on=("Token",))])
    with pytest.raises(UnknownDependency, match="Token"):
        units.validate()


def test_duplicate_unit_names_rejected():
    with pytest.raises(DuplicateUnit):
        UnitSet([UnitDescriptor(name="A", template="a"), UnitDescriptor(name="A", template="b")])


def test_duplicate_dependency_rejected():
    units = UnitSet(
        [
            UnitDescriptor(name="A", template="a"),
            UnitDescriptor(name="B", template="b", depends_on=("A", "A")),
        ]
    )
    with pytest.raises(DuplicateDependency):
        units.validate()


def test_ready_units_ordered_lexicographically(staking_units):
    assert names(staking_units.topological_order()) == ["Collectible", "Token", "Staking"]


def test_order_does_not_depend_on_declaration_order(staking_units):
    reversed_units = UnitSet(reversed(list(staking_units)))
    assert names(reversed_units.topological_order()) == names(staking_units.topological_order())


def test_dependents_wait_for_all_dependencies():
    units = UnitSet(
        [
            UnitDescriptor(name="Z", template="z"),
            UnitDescriptor(name="B", template="b", depends_on=("Z",)),
            UnitDescriptor(name="A", template="a", depends_on=("B", "C")),
            UnitDescriptor(name="C", template="c"),
        ]
    )
    # C and Z are ready first; B becomes ready after Z; A after both B and C
    assert names(units.topological_order()) == ["C", "Z", "B", "A"]


def test_build_args_receives_dependencies_in_declared_order():
    received = list()

    def builder(identities):
        received.append(identities)
        return ["static", *identities.values()]

    unit = UnitDescriptor(
        name="Staking",
        template="staking",
        depends_on=("Token", "Collectible"),
        args_builder=builder,
    )
    identities = {"Collectible": "0xC", "Token": "0xT", "Unrelated": "0xU"}

    assert unit.build_args(identities) == ["static", "0xT", "0xC"]
    assert received == [OrderedDict([("Token", "0xT"), ("Collectible", "0xC")])]
    assert list(received[0]) == ["Token", "Collectible"]


def test_leaf_unit_has_no_args():
    assert UnitDescriptor(name="Token", template="token").build_args({}) == []


def test_call_unit_must_depend_on_its_target(staking_units):
    mint = UnitDescriptor(
        name="MintRewards",
        template="fungible-token",
        depends_on=("Staking",),
        target="Token",
        method="mint",
    )
    units = UnitSet(list(staking_units) + [mint])

    with pytest.raises(ValidationError, match="must depend on its target 'Token'"):
        units.validate()

    valid = mint._replace(depends_on=("Staking", "Token"))
    assert valid.is_call
    assert names(UnitSet(list(staking_units) + [valid]).topological_order())[-1] == "MintRewards"
    assert not staking_units.get("Token").is_call


def test_named_args():
    unit = UnitDescriptor(name="Staking", template="staking", arg_names=("_rewardToken", "_nft"))
    named = unit.named_args(["0xa", "0xb"])
    assert named == OrderedDict([("_rewardToken", "0xa"), ("_nft", "0xb")])

    # names that do not line up with the built args fall back to positions
    assert unit.named_args(["0xa"]) == OrderedDict([("arg0", "0xa")])
    assert UnitDescriptor(name="Token", template="token").named_args([]) == OrderedDict()
