import logging
from typing import Iterable, Sequence

import jax
import jax.numpy as jnp

from .constraints import Constraint, ConstraintConfig, gather_equations
from .errors import EquationCountMismatch, StageNotRealizedError, require
from .force_conversion import GeneralizedForceConverter
from .indices import ConstraintIndex, assign_equation_slots
from .matter import MatterSubsystem
from .stage import Stage
from .state import State

logger = logging.getLogger(__name__)


def _concat(parts: Sequence[jax.Array]) -> jax.Array:
    return jnp.concatenate(parts) if parts else jnp.zeros(0)


class ConstraintSubsystem:
    """Owns the constraints of one system and drives them through the realization stages.

    Realization is lazy: `realize` only runs the stages above the state's
    current stage, and a state realized before a parameter change is redone
    from Topology on its next `realize` call.
    """

    def __init__(
        self,
        matter: MatterSubsystem,
        force_converter: GeneralizedForceConverter | None = None,
    ) -> None:
        self._matter = matter
        self._force_converter = force_converter
        self._constraints: list[Constraint] = []
        self._topology_version = 0

    @property
    def matter(self) -> MatterSubsystem:
        return self._matter

    @property
    def force_converter(self) -> GeneralizedForceConverter | None:
        return self._force_converter

    @property
    def constraints(self) -> tuple[Constraint, ...]:
        return tuple(self._constraints)

    @property
    def num_constraints(self) -> int:
        return len(self._constraints)

    def get_constraint(self, index: ConstraintIndex) -> Constraint:
        require(0 <= index < len(self._constraints), f"Constraint index {index} out of range")
        return self._constraints[index]

    @property
    def topology_version(self) -> int:
        return self._topology_version

    def invalidate_topology(self) -> None:
        self._topology_version += 1
        logger.debug("Topology invalidated, version %d", self._topology_version)

    def check_current(self, state: State) -> None:
        if state.topology_version != self._topology_version:
            raise StageNotRealizedError(
                f"State was realized against topology version {state.topology_version}, "
                f"current version is {self._topology_version}"
            )

    def adopt_constraint(self, constraint: Constraint) -> ConstraintIndex:
        """Take ownership of `constraint`. Its bodies and mobilizers are frozen from now on."""
        for body in [*constraint.constrained_bodies(), *constraint.constrained_mobilizers()]:
            require(
                0 <= body < self._matter.num_bodies,
                f"{type(constraint).__name__} refers to unknown body {body}",
            )
        index = ConstraintIndex(len(self._constraints))
        constraint.set_owner(self, index)
        self._constraints.append(constraint)
        logger.debug("Adopted %s as constraint %d", type(constraint).__name__, index)
        self.invalidate_topology()
        return index

    def adopt_from_configs(self, configs: Iterable[ConstraintConfig]) -> list[ConstraintIndex]:
        return [self.adopt_constraint(cfg.build_constraint(self._matter)) for cfg in configs]

    # Realization

    def realize_topology(self) -> State:
        """A default state realized through Topology."""
        nu = self._matter.nu
        state = State(q=self._matter.default_q(), u=jnp.zeros(nu), udot=jnp.zeros(nu))
        return self.realize(state, Stage.TOPOLOGY)

    def realize(self, state: State, stage: Stage = Stage.ACCELERATION) -> State:
        """Realize `state` through `stage` in place and return it."""
        if state.stage > Stage.EMPTY and state.topology_version != self._topology_version:
            logger.debug("State is stale, realizing again from Topology")
            state.stage = Stage.EMPTY
        while state.stage < stage:
            next_stage = state.stage.next()
            self._realize_stage(state, next_stage)
            state.stage = next_stage
        return state

    def _realize_stage(self, state: State, stage: Stage) -> None:
        logger.debug("Realizing %s", stage.name)
        if stage is Stage.TOPOLOGY:
            self._realize_topology(state)
        elif stage is Stage.MODEL:
            self._realize_model(state)
        elif stage is Stage.INSTANCE:
            for c in self._constraints:
                c.realize_instance_virtual(state)
        elif stage is Stage.TIME:
            for c in self._constraints:
                c.realize_time_virtual(state)
        elif stage is Stage.POSITION:
            self._realize_position(state)
        elif stage is Stage.VELOCITY:
            self._realize_velocity(state)
        elif stage is Stage.ACCELERATION:
            self._realize_acceleration(state)

    def _realize_topology(self, state: State) -> None:
        for c in self._constraints:
            c.realize_topology()
        state.topology_version = self._topology_version

    def _realize_model(self, state: State) -> None:
        state.model_cache = self._matter.realize_model()
        require(
            state.q.shape == (state.model_cache.total_nq,) and state.u.shape == (state.model_cache.total_nu,),
            f"State q/u shapes {state.q.shape}/{state.u.shape} do not match the matter "
            f"({state.model_cache.total_nq}/{state.model_cache.total_nu})",
        )
        counts = [c.calc_num_constraint_equations(state) for c in self._constraints]
        slots, totals = assign_equation_slots(counts)
        state.constraint_info = [
            c.build_model_info(state, n, s) for c, n, s in zip(self._constraints, counts, slots)
        ]
        state.totals = totals
        state.multipliers = jnp.zeros(totals.total)
        logger.debug("Equation slots %s, totals %s", slots, tuple(totals))
        for c in self._constraints:
            c.realize_model_virtual(state)

    def _realize_position(self, state: State) -> None:
        pc = self._matter.realize_position(state)
        state.position_cache = pc
        perr = [
            c.realize_position(state, pc, info.counts)
            for c, info in zip(self._constraints, state.constraint_info)
        ]
        state.qerr = _concat(perr)

    def _realize_velocity(self, state: State) -> None:
        vc = self._matter.realize_velocity(state)
        state.velocity_cache = vc
        pverr, verr = [], []
        for c, info in zip(self._constraints, state.constraint_info):
            p, v = c.realize_velocity(state, vc, info.counts)
            pverr.append(p)
            verr.append(v)
        state.uerr = _concat(pverr + verr)

    def _realize_acceleration(self, state: State) -> None:
        ac = self._matter.realize_acceleration(state)
        state.acceleration_cache = ac
        paerr, vaerr, aerr = [], [], []
        for c, info in zip(self._constraints, state.constraint_info):
            p, v, a = c.realize_acceleration(state, ac, info.counts)
            paerr.append(p)
            vaerr.append(v)
            aerr.append(a)
        state.udoterr = _concat(paerr + vaerr + aerr)

    # System-wide results

    def get_qerr(self, state: State) -> jax.Array:
        self.check_current(state)
        state.require_stage(Stage.POSITION, "qerr")
        return state.qerr

    def get_uerr(self, state: State) -> jax.Array:
        self.check_current(state)
        state.require_stage(Stage.VELOCITY, "uerr")
        return state.uerr

    def get_udoterr(self, state: State) -> jax.Array:
        self.check_current(state)
        state.require_stage(Stage.ACCELERATION, "udoterr")
        return state.udoterr

    def calc_g_transpose_lambda(self, state: State, multipliers: jax.Array) -> jax.Array:
        """Generalized force of all constraints from multipliers laid out like udoterr."""
        self.check_current(state)
        state.require_stage(Stage.POSITION, "Constraint forces")
        multipliers = jnp.asarray(multipliers)
        if multipliers.shape != (state.totals.total,):
            raise EquationCountMismatch(
                f"Expected {state.totals.total} multipliers, got shape {multipliers.shape}"
            )
        f = jnp.zeros(self._matter.nu)
        for c, info in zip(self._constraints, state.constraint_info):
            if not info.counts.total:
                continue
            f = f + c.calc_generalized_force_from_multipliers(
                state, *info.counts, gather_equations(multipliers, info, state.totals)
            )
        return f
