"""Staged state container and the per-stage caches stored in it."""

from dataclasses import dataclass, field, replace
from typing import NamedTuple

import jax
import jax.numpy as jnp

from .errors import EquationCountMismatch, StageNotRealizedError
from .indices import (
    EquationCounts,
    EquationSlots,
    MobilizedBodyIndex,
    QIndex,
    UIndex,
)
from .stage import Stage


class Subtree(NamedTuple):
    """Outmost common ancestor of a set of bodies and every body on the paths to it."""

    ancestor: MobilizedBodyIndex
    bodies: tuple[MobilizedBodyIndex, ...]


class ModelCache(NamedTuple):
    """Layout of q and u over mobilizers, indexed by mobilized body."""

    q_start: tuple[int, ...]
    nq: tuple[int, ...]
    u_start: tuple[int, ...]
    nu: tuple[int, ...]

    @property
    def total_nq(self) -> int:
        return sum(self.nq)

    @property
    def total_nu(self) -> int:
        return sum(self.nu)


class PositionCache(NamedTuple):
    """Ground-frame body poses: R (nb, 3, 3) and p (nb, 3)."""

    R: jax.Array
    p: jax.Array


class VelocityCache(NamedTuple):
    """Ground-frame angular (w) and origin linear (v) velocities, (nb, 3) each."""

    w: jax.Array
    v: jax.Array


class AccelerationCache(NamedTuple):
    """Ground-frame angular (b) and origin linear (a) accelerations, (nb, 3) each."""

    b: jax.Array
    a: jax.Array


@dataclass
class ConstraintModelInfo:
    """What Model realization fixes for one constraint."""

    counts: EquationCounts
    slots: EquationSlots
    # Per constrained mobilizer, first constrained q/u and their counts.
    q_start: list[int] = field(default_factory=list)
    nq: list[int] = field(default_factory=list)
    u_start: list[int] = field(default_factory=list)
    nu: list[int] = field(default_factory=list)
    # Per constrained q/u, the global index.
    q_indices: list[QIndex] = field(default_factory=list)
    u_indices: list[UIndex] = field(default_factory=list)


@dataclass
class State:
    """Generalized coordinates, their rates, time and everything realized from them.

    `stage` is the highest stage realized. Setting a variable drops the stage
    back below the first stage that depends on it.
    """

    q: jax.Array
    u: jax.Array
    udot: jax.Array
    time: float = 0.0
    stage: Stage = Stage.EMPTY
    topology_version: int = -1

    model_cache: ModelCache | None = None
    position_cache: PositionCache | None = None
    velocity_cache: VelocityCache | None = None
    acceleration_cache: AccelerationCache | None = None

    constraint_info: list[ConstraintModelInfo] = field(default_factory=list)
    totals: EquationCounts = EquationCounts(0, 0, 0)

    qerr: jax.Array = field(default_factory=lambda: jnp.zeros(0))
    uerr: jax.Array = field(default_factory=lambda: jnp.zeros(0))
    udoterr: jax.Array = field(default_factory=lambda: jnp.zeros(0))
    multipliers: jax.Array = field(default_factory=lambda: jnp.zeros(0))

    def require_stage(self, stage: Stage, what: str = "this quantity") -> None:
        if self.stage < stage:
            raise StageNotRealizedError(
                f"{what} requires stage {stage.name} but the state is at {self.stage.name}"
            )

    def invalidate(self, stage: Stage) -> None:
        """Forget `stage` and everything after it."""
        if self.stage >= stage:
            self.stage = stage.prev()

    def set_q(self, q: jax.Array) -> None:
        self.q = jnp.asarray(q)
        self.invalidate(Stage.POSITION)

    def set_u(self, u: jax.Array) -> None:
        self.u = jnp.asarray(u)
        self.invalidate(Stage.VELOCITY)

    def set_udot(self, udot: jax.Array) -> None:
        self.udot = jnp.asarray(udot)
        self.invalidate(Stage.ACCELERATION)

    def set_time(self, time: float) -> None:
        self.time = time
        self.invalidate(Stage.TIME)

    def set_multipliers(self, multipliers: jax.Array) -> None:
        """Store the multipliers computed by an outer solver; layout matches `udoterr`."""
        self.require_stage(Stage.MODEL, "Multipliers")
        multipliers = jnp.asarray(multipliers)
        total = self.totals.total
        if multipliers.shape != (total,):
            raise EquationCountMismatch(
                f"Expected {total} multipliers, got shape {multipliers.shape}"
            )
        self.multipliers = multipliers

    def copy(self) -> "State":
        """Shallow copy. Arrays are immutable so sharing them is safe."""
        return replace(
            self,
            constraint_info=list(self.constraint_info),
        )
