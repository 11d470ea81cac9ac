import heapq
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

UnitName = str
Identity = str

ArgsBuilder = Callable[["OrderedDict[UnitName, Identity]"], List[Any]]


class ValidationError(ValueError):
    """Raised when a set of unit descriptors cannot be deployed as declared."""


class DuplicateUnit(ValidationError):
    pass


class DuplicateDependency(ValidationError):
    pass


class UnknownDependency(ValidationError):
    pass


class CycleDetected(ValidationError):
    def __init__(self, cycle: List[UnitName]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


def _no_args(identities: "OrderedDict[UnitName, Identity]") -> List[Any]:
    return []


class UnitDescriptor(NamedTuple):
    """
    Represents a single unit and the units it needs identities from.

    A unit either deploys its template, or, when ``method`` is set, calls that
    method on the already deployed ``target`` unit (whose template is ``template``).
    The identity of a call unit is its transaction hash.
    """

    name: UnitName
    template: str
    depends_on: Tuple[UnitName, ...] = ()
    args_builder: ArgsBuilder = _no_args
    arg_names: Tuple[str, ...] = ()
    target: Optional[UnitName] = None
    method: Optional[str] = None

    @property
    def is_call(self) -> bool:
        return self.method is not None

    def build_args(self, identities: Dict[UnitName, Identity]) -> List[Any]:
        """Calls the args builder with the identities of this unit's dependencies only."""
        dependency_identities = OrderedDict(
            (dependency, identities[dependency]) for dependency in self.depends_on
        )
        return list(self.args_builder(dependency_identities))

    def named_args(self, args: List[Any]) -> "OrderedDict[str, Any]":
        """Pairs built args with their declared names, falling back to positions."""
        names = self.arg_names
        if len(names) != len(args):
            names = tuple(f"arg{position}" for position in range(len(args)))
        return OrderedDict(zip(names, args))


class UnitSet:
    """A finite, caller-supplied collection of unit descriptors."""

    def __init__(self, units: Iterable[UnitDescriptor]):
        self._units = OrderedDict()
        for unit in units:
            if unit.name in self._units:
                raise DuplicateUnit(f"Unit '{unit.name}' is declared more than once.")
            self._units[unit.name] = unit

    def __iter__(self) -> Iterator[UnitDescriptor]:
        return iter(self._units.values())

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, name: UnitName) -> bool:
        return name in self._units

    @property
    def names(self) -> List[UnitName]:
        return list(self._units)

    def get(self, name: UnitName) -> Optional[UnitDescriptor]:
        return self._units.get(name)

    def validate(self) -> None:
        """
        Checks that every dependency is a distinct declared unit
        and that the dependency graph is acyclic.
        """
        for unit in self._units.values():
            if len(set(unit.depends_on)) != len(unit.depends_on):
                raise DuplicateDependency(
                    f"Unit '{unit.name}' lists a dependency more than once: {unit.depends_on}"
                )
            for dependency in unit.depends_on:
                if dependency not in self._units:
                    raise UnknownDependency(
                        f"Unit '{unit.name}' depends on '{dependency}' which is not declared."
                    )
            if unit.is_call and unit.target not in unit.depends_on:
                raise ValidationError(
                    f"Call unit '{unit.name}' must depend on its target '{unit.target}'."
                )

        cycle = self._find_cycle()
        if cycle:
            raise CycleDetected(cycle)

    def _find_cycle(self) -> Optional[List[UnitName]]:
        visiting, done = set(), set()

        def visit(name: UnitName, path: List[UnitName]) -> Optional[List[UnitName]]:
            visiting.add(name)
            path.append(name)
            for dependency in self._units[name].depends_on:
                if dependency in visiting:
                    return path[path.index(dependency) :] + [dependency]
                if dependency not in done:
                    cycle = visit(dependency, path)
                    if cycle:
                        return cycle
            path.pop()
            visiting.discard(name)
            done.add(name)
            return None

        for name in sorted(self._units):
            if name not in done:
                cycle = visit(name, [])
                if cycle:
                    return cycle
        return None

    def topological_order(self) -> List[UnitDescriptor]:
        """
        Returns the units in dependency order. Among units whose dependencies
        are all satisfied, the lexicographically smallest name goes first,
        so the same set always yields the same order.
        """
        self.validate()

        remaining = {name: len(unit.depends_on) for name, unit in self._units.items()}
        dependents = {name: [] for name in self._units}
        for unit in self._units.values():
            for dependency in unit.depends_on:
                dependents[dependency].append(unit.name)

        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order = list()
        while ready:
            name = heapq.heappop(ready)
            order.append(self._units[name])
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        return order
