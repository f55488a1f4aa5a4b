"""Index types and the bookkeeping that maps local constraint indices to global ones."""

from dataclasses import dataclass, field
from typing import Generic, Iterator, NamedTuple, NewType, Sequence, TypeVar

from .errors import ContractViolation

MobilizedBodyIndex = NewType("MobilizedBodyIndex", int)
ConstrainedBodyIndex = NewType("ConstrainedBodyIndex", int)
ConstrainedMobilizerIndex = NewType("ConstrainedMobilizerIndex", int)
MobilizerQIndex = NewType("MobilizerQIndex", int)
MobilizerUIndex = NewType("MobilizerUIndex", int)
ConstrainedQIndex = NewType("ConstrainedQIndex", int)
ConstrainedUIndex = NewType("ConstrainedUIndex", int)
QIndex = NewType("QIndex", int)
UIndex = NewType("UIndex", int)
ConstraintIndex = NewType("ConstraintIndex", int)

GROUND = MobilizedBodyIndex(0)

L = TypeVar("L", bound=int)


@dataclass
class IndexMap(Generic[L]):
    """Dense local numbering of global mobilized bodies.

    Local indices are handed out in registration order. Lookup local -> global
    is a list access, global -> local a dict access.
    """

    _to_global: list[MobilizedBodyIndex] = field(default_factory=list)
    _to_local: dict[MobilizedBodyIndex, L] = field(default_factory=dict)

    def add(self, body: MobilizedBodyIndex) -> L:
        """Register `body`, returning its local index. Re-registering is a no-op."""
        existing = self._to_local.get(body)
        if existing is not None:
            return existing
        local = len(self._to_global)
        self._to_global.append(body)
        self._to_local[body] = local  # type: ignore[assignment]
        return local  # type: ignore[return-value]

    def to_global(self, local: L) -> MobilizedBodyIndex:
        if not 0 <= local < len(self._to_global):
            raise ContractViolation(f"Local index {local} out of range [0, {len(self._to_global)})")
        return self._to_global[local]

    def to_local(self, body: MobilizedBodyIndex) -> L:
        try:
            return self._to_local[body]
        except KeyError:
            raise ContractViolation(f"Mobilized body {body} is not registered") from None

    def __contains__(self, body: object) -> bool:
        return body in self._to_local

    def __len__(self) -> int:
        return len(self._to_global)

    def __iter__(self) -> Iterator[MobilizedBodyIndex]:
        return iter(self._to_global)


class EquationCounts(NamedTuple):
    mp: int
    mv: int
    ma: int

    @property
    def total(self) -> int:
        return self.mp + self.mv + self.ma


class EquationSlots(NamedTuple):
    """First slot of a constraint's equations in each of the three category arrays."""

    holonomic: int
    nonholonomic: int
    acceleration_only: int


def assign_equation_slots(
    counts: Sequence[EquationCounts],
) -> tuple[list[EquationSlots], EquationCounts]:
    """Pack the equations of each constraint, in order, into the three category arrays.

    Returns the per-constraint slot bases and the category totals. A constraint
    with no equations in a category gets the running offset and an empty range.
    """
    slots: list[EquationSlots] = []
    holo = nonholo = acc = 0
    for c in counts:
        if min(c) < 0:
            raise ContractViolation(f"Negative equation count {tuple(c)}")
        slots.append(EquationSlots(holo, nonholo, acc))
        holo += c.mp
        nonholo += c.mv
        acc += c.ma
    return slots, EquationCounts(holo, nonholo, acc)
