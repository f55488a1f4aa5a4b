"""Base class of all constraints: bookkeeping, kinematics accessors and the force engine."""

import logging
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import jax
import jax.numpy as jnp
import numpy as np

from .errors import (
    BufferTooSmallError,
    ContractViolation,
    EquationCountMismatch,
    StageNotRealizedError,
    require,
)
from .indices import (
    ConstrainedBodyIndex,
    ConstrainedMobilizerIndex,
    ConstrainedQIndex,
    ConstrainedUIndex,
    ConstraintIndex,
    EquationCounts,
    EquationSlots,
    IndexMap,
    MobilizedBodyIndex,
    MobilizerQIndex,
    MobilizerUIndex,
    QIndex,
    UIndex,
)
from .spatial import (
    SpatialVec,
    Transform,
    relative_acceleration,
    relative_transform,
    relative_velocity,
)
from .stage import Stage
from .state import (
    AccelerationCache,
    ConstraintModelInfo,
    PositionCache,
    State,
    Subtree,
    VelocityCache,
)

if TYPE_CHECKING:
    from .matter import MatterSubsystem
    from .subsystem import ConstraintSubsystem

logger = logging.getLogger(__name__)

# Body forces are (num constrained bodies, 2, 3): [torque, force] per body,
# applied at the body origin and expressed in the ancestor frame.
ForcePair = tuple[jax.Array, jax.Array]


def gather_equations(array: jax.Array, info: ConstraintModelInfo, totals: EquationCounts) -> jax.Array:
    """One constraint's entries [p | v | a] of an array laid out like udoterr."""
    s, c = info.slots, info.counts
    nonholo = totals.mp + s.nonholonomic
    acc = totals.mp + totals.mv + s.acceleration_only
    return jnp.concatenate(
        [
            array[s.holonomic : s.holonomic + c.mp],
            array[nonholo : nonholo + c.mv],
            array[acc : acc + c.ma],
        ]
    )


class Constraint:
    """
    A kinematic relation between constrained bodies and mobilizers, contributing
    mp holonomic, mv nonholonomic and ma acceleration-only equations.

    Subclasses register their bodies and mobilizers in the constructor and
    override the hooks of every category whose count is nonzero. Everything is
    measured from and expressed in the ancestor frame A of the constraint's
    subtree.
    """

    def __init__(self, mp: int = 0, mv: int = 0, ma: int = 0) -> None:
        self._default_counts = self._validated_counts(mp, mv, ma)
        self._bodies: IndexMap[ConstrainedBodyIndex] = IndexMap()
        self._mobilizers: IndexMap[ConstrainedMobilizerIndex] = IndexMap()
        self._owner: "weakref.ReferenceType[ConstraintSubsystem] | None" = None
        self._index: ConstraintIndex | None = None
        self._version = 0
        self._topology_version = -1
        self._subtree: Subtree | None = None

    @staticmethod
    def _validated_counts(mp: int, mv: int, ma: int) -> EquationCounts:
        if min(mp, mv, ma) < 0:
            raise ValueError(f"Equation counts must be non-negative, got {(mp, mv, ma)}")
        return EquationCounts(mp, mv, ma)

    # Ownership and topology

    @property
    def is_adopted(self) -> bool:
        return self._owner is not None

    @property
    def subsystem(self) -> "ConstraintSubsystem":
        owner = self._owner() if self._owner is not None else None
        if owner is None:
            raise ContractViolation(f"{type(self).__name__} is not part of a subsystem")
        return owner

    @property
    def matter(self) -> "MatterSubsystem":
        return self.subsystem.matter

    @property
    def constraint_index(self) -> ConstraintIndex:
        if self._index is None:
            raise ContractViolation(f"{type(self).__name__} is not part of a subsystem")
        return self._index

    def set_owner(self, subsystem: "ConstraintSubsystem", index: ConstraintIndex) -> None:
        """Called by the subsystem on adoption. Freezes the registered bodies and mobilizers."""
        if self.is_adopted:
            raise ContractViolation(f"{type(self).__name__} was already adopted")
        self._owner = weakref.ref(subsystem)
        self._index = index

    def invalidate_topology(self) -> None:
        """Signal that a parameter changed. Re-realization happens on next access."""
        self._version += 1
        if self.is_adopted:
            self.subsystem.invalidate_topology()

    def set_default_num_constraint_equations(self, mp: int, mv: int, ma: int) -> None:
        self._default_counts = self._validated_counts(mp, mv, ma)
        self.invalidate_topology()

    def get_default_num_constraint_equations(self) -> EquationCounts:
        return self._default_counts

    def realize_topology(self) -> None:
        """Compute the subtree and the derived topology cache unless they are current."""
        if self._topology_version == self._version:
            return
        self._subtree = self.matter.find_subtree(
            [*self._bodies, *self._mobilizers]
        )
        self.calc_topology_cache()
        self._topology_version = self._version
        logger.debug(
            "Constraint %s (%s) topology realized, ancestor %d",
            self._index,
            type(self).__name__,
            self._subtree.ancestor,
        )

    @property
    def subtree(self) -> Subtree:
        if self._subtree is None or self._topology_version != self._version:
            raise StageNotRealizedError(f"{type(self).__name__} topology is not realized")
        return self._subtree

    @property
    def ancestor(self) -> MobilizedBodyIndex:
        return self.subtree.ancestor

    # Registration

    def add_constrained_body(self, body: MobilizedBodyIndex) -> ConstrainedBodyIndex:
        require(not self.is_adopted, "Cannot add a constrained body after adoption")
        return self._bodies.add(MobilizedBodyIndex(int(body)))

    def add_constrained_mobilizer(self, body: MobilizedBodyIndex) -> ConstrainedMobilizerIndex:
        require(not self.is_adopted, "Cannot add a constrained mobilizer after adoption")
        return self._mobilizers.add(MobilizedBodyIndex(int(body)))

    @property
    def num_constrained_bodies(self) -> int:
        return len(self._bodies)

    @property
    def num_constrained_mobilizers(self) -> int:
        return len(self._mobilizers)

    def get_mobilized_body_index_of_constrained_body(self, body: ConstrainedBodyIndex) -> MobilizedBodyIndex:
        return self._bodies.to_global(body)

    def get_mobilized_body_index_of_constrained_mobilizer(
        self, mobilizer: ConstrainedMobilizerIndex
    ) -> MobilizedBodyIndex:
        return self._mobilizers.to_global(mobilizer)

    def get_constrained_body_index(self, body: MobilizedBodyIndex) -> ConstrainedBodyIndex:
        return self._bodies.to_local(body)

    def get_constrained_mobilizer_index(self, body: MobilizedBodyIndex) -> ConstrainedMobilizerIndex:
        return self._mobilizers.to_local(body)

    def constrained_bodies(self) -> list[MobilizedBodyIndex]:
        return list(self._bodies)

    def constrained_mobilizers(self) -> list[MobilizedBodyIndex]:
        return list(self._mobilizers)

    # Model-stage bookkeeping

    def _model_info(self, state: State) -> ConstraintModelInfo:
        self.subsystem.check_current(state)
        state.require_stage(Stage.MODEL, "Constraint equation counts and indices")
        return state.constraint_info[self.constraint_index]

    def calc_num_constraint_equations(self, state: State) -> EquationCounts:
        """Counts for this state. Only Topology has to be realized."""
        self.subsystem.check_current(state)
        state.require_stage(Stage.TOPOLOGY, "Constraint equation counts")
        counts = self.calc_num_constraint_equations_virtual(state)
        return self._validated_counts(*counts)

    def get_num_constraint_equations(self, state: State) -> EquationCounts:
        return self._model_info(state).counts

    def get_constraint_equation_slots(self, state: State) -> EquationSlots:
        return self._model_info(state).slots

    def get_num_constrained_q(
        self, state: State, mobilizer: ConstrainedMobilizerIndex | None = None
    ) -> int:
        info = self._model_info(state)
        if mobilizer is None:
            return len(info.q_indices)
        self._mobilizers.to_global(mobilizer)
        return info.nq[mobilizer]

    def get_num_constrained_u(
        self, state: State, mobilizer: ConstrainedMobilizerIndex | None = None
    ) -> int:
        info = self._model_info(state)
        if mobilizer is None:
            return len(info.u_indices)
        self._mobilizers.to_global(mobilizer)
        return info.nu[mobilizer]

    def get_constrained_q_index(
        self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerQIndex
    ) -> ConstrainedQIndex:
        info = self._model_info(state)
        self._mobilizers.to_global(mobilizer)
        require(0 <= which < info.nq[mobilizer], f"Mobilizer q index {which} out of range")
        return ConstrainedQIndex(info.q_start[mobilizer] + which)

    def get_constrained_u_index(
        self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerUIndex
    ) -> ConstrainedUIndex:
        info = self._model_info(state)
        self._mobilizers.to_global(mobilizer)
        require(0 <= which < info.nu[mobilizer], f"Mobilizer u index {which} out of range")
        return ConstrainedUIndex(info.u_start[mobilizer] + which)

    def get_q_index_of_constrained_q(self, state: State, cq: ConstrainedQIndex) -> QIndex:
        info = self._model_info(state)
        require(0 <= cq < len(info.q_indices), f"Constrained q index {cq} out of range")
        return info.q_indices[cq]

    def get_u_index_of_constrained_u(self, state: State, cu: ConstrainedUIndex) -> UIndex:
        info = self._model_info(state)
        require(0 <= cu < len(info.u_indices), f"Constrained u index {cu} out of range")
        return info.u_indices[cu]

    def build_model_info(
        self,
        state: State,
        counts: EquationCounts,
        slots: EquationSlots,
    ) -> ConstraintModelInfo:
        """Lay out the constrained q's and u's from the matter's model cache."""
        model = state.model_cache
        assert model is not None
        info = ConstraintModelInfo(counts=counts, slots=slots)
        for body in self._mobilizers:
            info.q_start.append(len(info.q_indices))
            info.nq.append(model.nq[body])
            info.q_indices.extend(QIndex(model.q_start[body] + i) for i in range(model.nq[body]))
            info.u_start.append(len(info.u_indices))
            info.nu.append(model.nu[body])
            info.u_indices.extend(UIndex(model.u_start[body] + i) for i in range(model.nu[body]))
        return info

    # Frame kinematics, measured from and expressed in the ancestor frame

    def _position_cache(self, state: State) -> PositionCache:
        self.subsystem.check_current(state)
        state.require_stage(Stage.POSITION, "Body positions")
        assert state.position_cache is not None
        return state.position_cache

    def _velocity_cache(self, state: State) -> VelocityCache:
        self.subsystem.check_current(state)
        state.require_stage(Stage.VELOCITY, "Body velocities")
        assert state.velocity_cache is not None
        return state.velocity_cache

    def _acceleration_cache(self, state: State) -> AccelerationCache:
        self.subsystem.check_current(state)
        state.require_stage(Stage.ACCELERATION, "Body accelerations")
        assert state.acceleration_cache is not None
        return state.acceleration_cache

    @staticmethod
    def _ground_pose(pc: PositionCache, body: MobilizedBodyIndex) -> Transform:
        return Transform(pc.R[body], pc.p[body])

    @staticmethod
    def _ground_velocity(vc: VelocityCache, body: MobilizedBodyIndex) -> SpatialVec:
        return SpatialVec(vc.w[body], vc.v[body])

    @staticmethod
    def _ground_acceleration(ac: AccelerationCache, body: MobilizedBodyIndex) -> SpatialVec:
        return SpatialVec(ac.b[body], ac.a[body])

    def get_body_transform(
        self, state: State, body: ConstrainedBodyIndex, cache: PositionCache | None = None
    ) -> Transform:
        """X_AB. Pass `cache` while Position is being realized."""
        pc = cache if cache is not None else self._position_cache(state)
        mobod = self._bodies.to_global(body)
        return relative_transform(self._ground_pose(pc, self.ancestor), self._ground_pose(pc, mobod))

    def get_body_velocity(
        self, state: State, body: ConstrainedBodyIndex, cache: VelocityCache | None = None
    ) -> SpatialVec:
        """V_AB. Pass `cache` while Velocity is being realized."""
        pc = self._position_cache(state)
        vc = cache if cache is not None else self._velocity_cache(state)
        mobod = self._bodies.to_global(body)
        anc = self.ancestor
        return relative_velocity(
            self._ground_pose(pc, anc),
            self._ground_velocity(vc, anc),
            self._ground_pose(pc, mobod),
            self._ground_velocity(vc, mobod),
        )

    def get_body_acceleration(
        self, state: State, body: ConstrainedBodyIndex, cache: AccelerationCache | None = None
    ) -> SpatialVec:
        """A_AB. Pass `cache` while Acceleration is being realized."""
        pc = self._position_cache(state)
        vc = self._velocity_cache(state)
        ac = cache if cache is not None else self._acceleration_cache(state)
        mobod = self._bodies.to_global(body)
        anc = self.ancestor
        return relative_acceleration(
            self._ground_pose(pc, anc),
            self._ground_velocity(vc, anc),
            self._ground_acceleration(ac, anc),
            self._ground_pose(pc, mobod),
            self._ground_velocity(vc, mobod),
            self._ground_acceleration(ac, mobod),
        )

    def get_body_rotation(self, state: State, body: ConstrainedBodyIndex, cache: PositionCache | None = None) -> jax.Array:
        return self.get_body_transform(state, body, cache).R

    def get_body_origin_location(self, state: State, body: ConstrainedBodyIndex, cache: PositionCache | None = None) -> jax.Array:
        return self.get_body_transform(state, body, cache).p

    def get_body_angular_velocity(self, state: State, body: ConstrainedBodyIndex, cache: VelocityCache | None = None) -> jax.Array:
        return self.get_body_velocity(state, body, cache).angular

    def get_body_origin_velocity(self, state: State, body: ConstrainedBodyIndex, cache: VelocityCache | None = None) -> jax.Array:
        return self.get_body_velocity(state, body, cache).linear

    def get_body_angular_acceleration(
        self, state: State, body: ConstrainedBodyIndex, cache: AccelerationCache | None = None
    ) -> jax.Array:
        return self.get_body_acceleration(state, body, cache).angular

    def get_body_origin_acceleration(
        self, state: State, body: ConstrainedBodyIndex, cache: AccelerationCache | None = None
    ) -> jax.Array:
        return self.get_body_acceleration(state, body, cache).linear

    def calc_station_location(
        self, state: State, body: ConstrainedBodyIndex, station: jax.Array, cache: PositionCache | None = None
    ) -> jax.Array:
        return self.get_body_transform(state, body, cache).apply(station)

    def calc_station_velocity(
        self, state: State, body: ConstrainedBodyIndex, station: jax.Array, cache: VelocityCache | None = None
    ) -> jax.Array:
        r = self.get_body_rotation(state, body) @ station  # re-expressed, not shifted
        V_AB = self.get_body_velocity(state, body, cache)
        return V_AB.linear + jnp.cross(V_AB.angular, r)

    def calc_station_acceleration(
        self, state: State, body: ConstrainedBodyIndex, station: jax.Array, cache: AccelerationCache | None = None
    ) -> jax.Array:
        r = self.get_body_rotation(state, body) @ station
        w = self.get_body_angular_velocity(state, body)
        A_AB = self.get_body_acceleration(state, body, cache)
        return A_AB.linear + jnp.cross(A_AB.angular, r) + jnp.cross(w, jnp.cross(w, r))

    # Mobilizer coordinates and speeds. These read state variables and need Model only.

    def _q_index(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerQIndex) -> QIndex:
        return self.get_q_index_of_constrained_q(state, self.get_constrained_q_index(state, mobilizer, which))

    def _u_index(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerUIndex) -> UIndex:
        return self.get_u_index_of_constrained_u(state, self.get_constrained_u_index(state, mobilizer, which))

    def get_one_q(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerQIndex) -> jax.Array:
        return state.q[self._q_index(state, mobilizer, which)]

    def get_one_u(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerUIndex) -> jax.Array:
        return state.u[self._u_index(state, mobilizer, which)]

    def get_one_udot(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerUIndex) -> jax.Array:
        return state.udot[self._u_index(state, mobilizer, which)]

    def get_one_qdot(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerQIndex) -> jax.Array:
        idx = self._q_index(state, mobilizer, which)
        return self.matter.calc_qdot(state.q, state.u)[idx]

    def get_one_qdotdot(self, state: State, mobilizer: ConstrainedMobilizerIndex, which: MobilizerQIndex) -> jax.Array:
        """d/dt (N(q) u) = N(q) udot + Ndot(q, qdot) u, by forward-mode differentiation."""
        idx = self._q_index(state, mobilizer, which)
        qdot = self.matter.calc_qdot(state.q, state.u)
        _, qdotdot = jax.jvp(self.matter.calc_qdot, (state.q, state.u), (qdot, state.udot))
        return qdotdot[idx]

    # Force accumulation

    def zero_body_forces(self) -> jax.Array:
        return jnp.zeros((self.num_constrained_bodies, 2, 3))

    def zero_mobility_forces(self, state: State) -> jax.Array:
        return jnp.zeros(self.get_num_constrained_u(state))

    def add_in_station_force(
        self,
        state: State,
        body: ConstrainedBodyIndex,
        station: jax.Array,
        force: jax.Array,
        body_forces: jax.Array,
    ) -> jax.Array:
        """Apply an A-frame force at a B-frame station."""
        require(body_forces.shape[0] == self.num_constrained_bodies, "Body force array has the wrong length")
        r = self.get_body_rotation(state, body) @ station
        return body_forces.at[body, 0].add(jnp.cross(r, force)).at[body, 1].add(force)

    def add_in_body_torque(
        self,
        state: State,
        body: ConstrainedBodyIndex,
        torque: jax.Array,
        body_forces: jax.Array,
    ) -> jax.Array:
        require(body_forces.shape[0] == self.num_constrained_bodies, "Body force array has the wrong length")
        self._bodies.to_global(body)
        return body_forces.at[body, 0].add(torque)

    def add_in_one_mobility_force(
        self,
        state: State,
        mobilizer: ConstrainedMobilizerIndex,
        which: MobilizerUIndex,
        force: jax.Array,
        mobility_forces: jax.Array,
    ) -> jax.Array:
        require(
            mobility_forces.shape[0] == self.get_num_constrained_u(state),
            "Mobility force array has the wrong length",
        )
        return mobility_forces.at[self.get_constrained_u_index(state, mobilizer, which)].add(force)

    # Realization, driven by the subsystem

    def _checked(self, values: Any, n: int, hook: str) -> jax.Array:
        values = jnp.asarray(values)
        if values.shape != (n,):
            raise EquationCountMismatch(
                f"{type(self).__name__}.{hook} returned shape {values.shape}, expected ({n},)"
            )
        return values

    def realize_position(self, state: State, cache: PositionCache, counts: EquationCounts) -> jax.Array:
        """perr, length mp."""
        if not counts.mp:
            return jnp.zeros(0)
        return self._checked(self.calc_position_errors(state, cache), counts.mp, "calc_position_errors")

    def realize_velocity(self, state: State, cache: VelocityCache, counts: EquationCounts) -> tuple[jax.Array, jax.Array]:
        """(pverr, verr), lengths mp and mv."""
        pverr = verr = jnp.zeros(0)
        if counts.mp:
            pverr = self._checked(self.calc_position_dot_errors(state, cache), counts.mp, "calc_position_dot_errors")
        if counts.mv:
            verr = self._checked(self.calc_velocity_errors(state, cache), counts.mv, "calc_velocity_errors")
        return pverr, verr

    def realize_acceleration(
        self, state: State, cache: AccelerationCache, counts: EquationCounts
    ) -> tuple[jax.Array, jax.Array, jax.Array]:
        """(paerr, vaerr, aerr), lengths mp, mv and ma."""
        paerr = vaerr = aerr = jnp.zeros(0)
        if counts.mp:
            paerr = self._checked(
                self.calc_position_dot_dot_errors(state, cache), counts.mp, "calc_position_dot_dot_errors"
            )
        if counts.mv:
            vaerr = self._checked(self.calc_velocity_dot_errors(state, cache), counts.mv, "calc_velocity_dot_errors")
        if counts.ma:
            aerr = self._checked(self.calc_acceleration_errors(state, cache), counts.ma, "calc_acceleration_errors")
        return paerr, vaerr, aerr

    # Error and multiplier extraction

    @staticmethod
    def _deliver(values: jax.Array, out: np.ndarray | None) -> jax.Array | np.ndarray:
        if out is None:
            return values
        if out.shape[0] < values.shape[0]:
            raise BufferTooSmallError(f"Buffer of length {out.shape[0]} cannot hold {values.shape[0]} values")
        out[: values.shape[0]] = np.asarray(values)
        return out

    @staticmethod
    def _expect(expected: int, actual: int, what: str) -> None:
        if expected != actual:
            raise EquationCountMismatch(f"Expected {expected} {what}, constraint has {actual}")

    def get_position_errors(self, state: State, mp: int, out: np.ndarray | None = None) -> jax.Array | np.ndarray:
        """perr. Needs Position."""
        info = self._model_info(state)
        self._expect(mp, info.counts.mp, "position errors")
        state.require_stage(Stage.POSITION, "Position errors")
        start = info.slots.holonomic
        return self._deliver(state.qerr[start : start + mp], out)

    def get_velocity_errors(self, state: State, mpv: int, out: np.ndarray | None = None) -> jax.Array | np.ndarray:
        """[pverr | verr]. Needs Velocity."""
        info = self._model_info(state)
        self._expect(mpv, info.counts.mp + info.counts.mv, "velocity errors")
        state.require_stage(Stage.VELOCITY, "Velocity errors")
        holo = state.totals.mp
        values = jnp.concatenate(
            [
                state.uerr[info.slots.holonomic : info.slots.holonomic + info.counts.mp],
                state.uerr[holo + info.slots.nonholonomic : holo + info.slots.nonholonomic + info.counts.mv],
            ]
        )
        return self._deliver(values, out)

    def get_acceleration_errors(self, state: State, mpva: int, out: np.ndarray | None = None) -> jax.Array | np.ndarray:
        """[paerr | vaerr | aerr]. Needs Acceleration."""
        info = self._model_info(state)
        self._expect(mpva, info.counts.total, "acceleration errors")
        state.require_stage(Stage.ACCELERATION, "Acceleration errors")
        return self._deliver(gather_equations(state.udoterr, info, state.totals), out)

    def get_multipliers(self, state: State, mpva: int, out: np.ndarray | None = None) -> jax.Array | np.ndarray:
        """This constraint's share of the multipliers stored in the state."""
        info = self._model_info(state)
        self._expect(mpva, info.counts.total, "multipliers")
        require(
            state.multipliers.shape == (state.totals.total,),
            "Multipliers do not match the equation layout of this state",
            StageNotRealizedError,
        )
        return self._deliver(gather_equations(state.multipliers, info, state.totals), out)

    # Jacobian transpose

    def calc_constraint_forces_from_multipliers(
        self,
        state: State,
        mp: int,
        mv: int,
        ma: int,
        multipliers: jax.Array,
    ) -> ForcePair:
        """(body_forces in A, mobility_forces) from multipliers segmented [mp | mv | ma].

        Any segment may be left out by passing a zero count. Needs Position.
        """
        actual = self.get_num_constraint_equations(state)
        state.require_stage(Stage.POSITION, "Constraint forces")
        multipliers = jnp.asarray(multipliers)
        self._expect(mp + mv + ma, multipliers.shape[0], "multipliers in the given vector")

        body_forces = self.zero_body_forces()
        mobility_forces = self.zero_mobility_forces(state)
        segments = (
            (mp, actual.mp, "holonomic", self.apply_position_constraint_forces),
            (mv, actual.mv, "nonholonomic", self.apply_velocity_constraint_forces),
            (ma, actual.ma, "acceleration-only", self.apply_acceleration_constraint_forces),
        )
        offset = 0
        for n, n_actual, what, apply in segments:
            if not n:
                continue
            self._expect(n, n_actual, f"{what} multipliers")
            bf, mf = apply(state, multipliers[offset : offset + n])
            body_forces = body_forces + bf
            mobility_forces = mobility_forces + mf
            offset += n
        return body_forces, mobility_forces

    def convert_constraint_forces_to_generalized_forces(
        self,
        state: State,
        body_forces: jax.Array,
        mobility_forces: jax.Array,
    ) -> jax.Array:
        """Re-express in ground, scatter to system bodies and mobilities, then apply the converter."""
        converter = self.subsystem.force_converter
        if converter is None:
            raise NotImplementedError(
                "Converting constraint forces to generalized forces needs a GeneralizedForceConverter"
            )
        pc = self._position_cache(state)
        info = self._model_info(state)
        R_GA = pc.R[self.ancestor]

        system_body_forces = jnp.zeros((self.matter.num_bodies, 2, 3))
        if self.num_constrained_bodies:
            mobods = jnp.asarray(list(self._bodies), dtype=jnp.int32)
            in_ground = jnp.einsum("ij,bkj->bki", R_GA, body_forces)
            system_body_forces = system_body_forces.at[mobods].add(in_ground)

        system_mobility_forces = jnp.zeros(self.matter.nu)
        if info.u_indices:
            u_idx = jnp.asarray(info.u_indices, dtype=jnp.int32)
            system_mobility_forces = system_mobility_forces.at[u_idx].add(mobility_forces)

        return converter.calc_generalized_forces(state, system_body_forces, system_mobility_forces)

    def calc_generalized_force_from_multipliers(
        self,
        state: State,
        mp: int,
        mv: int,
        ma: int,
        multipliers: jax.Array,
    ) -> jax.Array:
        """f = G^T lambda, without forming G."""
        body_forces, mobility_forces = self.calc_constraint_forces_from_multipliers(state, mp, mv, ma, multipliers)
        return self.convert_constraint_forces_to_generalized_forces(state, body_forces, mobility_forces)

    # Hooks

    def calc_topology_cache(self) -> None:
        """Derive parameter-dependent values once per topology version."""
        pass

    def calc_num_constraint_equations_virtual(self, state: State) -> EquationCounts:
        return self._default_counts

    def realize_model_virtual(self, state: State) -> None:
        pass

    def realize_instance_virtual(self, state: State) -> None:
        pass

    def realize_time_virtual(self, state: State) -> None:
        pass

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        raise NotImplementedError(f"{type(self).__name__} has holonomic equations but no calc_position_errors")

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        raise NotImplementedError(f"{type(self).__name__} has holonomic equations but no calc_position_dot_errors")

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        raise NotImplementedError(
            f"{type(self).__name__} has holonomic equations but no calc_position_dot_dot_errors"
        )

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        raise NotImplementedError(
            f"{type(self).__name__} has holonomic equations but no apply_position_constraint_forces"
        )

    def calc_velocity_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        raise NotImplementedError(f"{type(self).__name__} has nonholonomic equations but no calc_velocity_errors")

    def calc_velocity_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        raise NotImplementedError(
            f"{type(self).__name__} has nonholonomic equations but no calc_velocity_dot_errors"
        )

    def apply_velocity_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        raise NotImplementedError(
            f"{type(self).__name__} has nonholonomic equations but no apply_velocity_constraint_forces"
        )

    def calc_acceleration_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        raise NotImplementedError(
            f"{type(self).__name__} has acceleration-only equations but no calc_acceleration_errors"
        )

    def apply_acceleration_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        raise NotImplementedError(
            f"{type(self).__name__} has acceleration-only equations but no apply_acceleration_constraint_forces"
        )


@dataclass
class ConstraintConfig(ABC):
    @abstractmethod
    def build_constraint(self, matter: "MatterSubsystem") -> Constraint:
        raise NotImplementedError
