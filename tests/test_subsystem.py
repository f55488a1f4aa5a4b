"""Realization pipeline, equation layout and the calling contract of the subsystem."""

import jax.numpy as jnp
import numpy as np
import pytest

from mbconstraints import (
    Ball,
    BallConfig,
    BufferTooSmallError,
    ConstantSpeed,
    ConstantSpeedConfig,
    ContractViolation,
    ConstraintSubsystem,
    EquationCountMismatch,
    EquationCounts,
    NoSlip1D,
    Rod,
    RodConfig,
    Stage,
    StageNotRealizedError,
    State,
    TreeMatter,
)
from mbconstraints.indices import assign_equation_slots


@pytest.fixture
def mixed(subsystem: ConstraintSubsystem) -> tuple[ConstraintSubsystem, list]:
    """Rod (1,0,0), ConstantSpeed (0,1,0), Ball (3,0,0), NoSlip1D (0,1,0)."""
    constraints = [
        Rod(3, jnp.array([0.1, 0.0, 0.0]), 4, jnp.array([0.0, 0.1, 0.0]), 0.5),
        ConstantSpeed(3, 0.5),
        Ball(2, jnp.array([0.0, 0.5, 0.0]), 4, jnp.array([0.1, 0.1, 0.1])),
        NoSlip1D(1, jnp.array([0.2, 0.1, -0.3]), jnp.array([1.0, 0.0, 1.0]), 3, 2),
    ]
    for c in constraints:
        subsystem.adopt_constraint(c)
    return subsystem, constraints


class TestStages:
    def test_stage_order(self) -> None:
        assert Stage.realizable()[0] is Stage.TOPOLOGY
        assert Stage.realizable()[-1] is Stage.ACCELERATION
        assert Stage.POSITION.next() is Stage.VELOCITY
        assert Stage.POSITION.prev() is Stage.TIME
        with pytest.raises(ValueError):
            Stage.ACCELERATION.next()
        with pytest.raises(ValueError):
            Stage.EMPTY.prev()

    def test_realize_runs_only_missing_stages(self, mixed, random_state) -> None:
        subsystem, _ = mixed
        state = random_state()
        assert state.stage is Stage.EMPTY
        subsystem.realize(state, Stage.MODEL)
        assert state.stage is Stage.MODEL
        assert state.position_cache is None
        subsystem.realize(state, Stage.POSITION)
        assert state.stage is Stage.POSITION
        assert state.velocity_cache is None
        subsystem.realize(state, Stage.TIME)
        assert state.stage is Stage.POSITION
        subsystem.realize(state)
        assert state.stage is Stage.ACCELERATION

    @pytest.mark.parametrize(
        "setter, value, stage",
        [
            ("set_q", "q", Stage.TIME),
            ("set_u", "u", Stage.POSITION),
            ("set_udot", "udot", Stage.VELOCITY),
        ],
    )
    def test_state_changes_invalidate_downstream(self, mixed, random_state, setter, value, stage) -> None:
        subsystem, _ = mixed
        state = subsystem.realize(random_state())
        getattr(state, setter)(getattr(state, value) + 0.1)
        assert state.stage is stage
        subsystem.realize(state)
        assert state.stage is Stage.ACCELERATION

    def test_set_time_invalidates_time(self, mixed, random_state) -> None:
        subsystem, _ = mixed
        state = subsystem.realize(random_state())
        state.set_time(1.0)
        assert state.stage is Stage.INSTANCE

    def test_new_value_is_seen_after_rerealization(self, mixed, random_state) -> None:
        subsystem, (_, speed, _, _) = mixed
        state = subsystem.realize(random_state(), Stage.VELOCITY)
        state.set_u(state.u.at[12].set(2.0))
        with pytest.raises(StageNotRealizedError):
            speed.get_velocity_errors(state, 1)
        subsystem.realize(state, Stage.VELOCITY)
        assert np.allclose(speed.get_velocity_errors(state, 1), [1.5])

    def test_wrong_state_size_is_rejected(self, mixed) -> None:
        subsystem, _ = mixed
        with pytest.raises(ContractViolation):
            subsystem.realize(State(q=jnp.zeros(3), u=jnp.zeros(14), udot=jnp.zeros(14)))

    def test_adoption_makes_old_states_stale(self, mixed, random_state) -> None:
        subsystem, _ = mixed
        state = subsystem.realize(random_state())
        subsystem.adopt_constraint(ConstantSpeed(4, 0.0))
        with pytest.raises(StageNotRealizedError):
            subsystem.get_udoterr(state)
        subsystem.realize(state)
        assert state.udoterr.shape == (7,)


class TestEquationLayout:
    def test_slots(self, mixed, random_state) -> None:
        subsystem, (rod, speed, ball, no_slip) = mixed
        state = subsystem.realize(random_state())
        assert tuple(rod.get_constraint_equation_slots(state)) == (0, 0, 0)
        assert tuple(speed.get_constraint_equation_slots(state)) == (1, 0, 0)
        assert tuple(ball.get_constraint_equation_slots(state)) == (1, 1, 0)
        assert tuple(no_slip.get_constraint_equation_slots(state)) == (4, 1, 0)
        assert state.totals == EquationCounts(4, 2, 0)

    def test_global_arrays(self, mixed, random_state) -> None:
        subsystem, (rod, speed, ball, no_slip) = mixed
        state = subsystem.realize(random_state())
        assert subsystem.get_qerr(state).shape == (4,)
        assert subsystem.get_uerr(state).shape == (6,)
        assert subsystem.get_udoterr(state).shape == (6,)

        uerr = state.uerr
        assert np.allclose(ball.get_velocity_errors(state, 3), uerr[1:4])
        assert np.allclose(speed.get_velocity_errors(state, 1), uerr[4:5])
        assert np.allclose(no_slip.get_velocity_errors(state, 1), uerr[5:6])
        assert np.allclose(rod.get_position_errors(state, 1), state.qerr[0:1])
        assert np.allclose(ball.get_acceleration_errors(state, 3), state.udoterr[1:4])

    def test_slots_partition_each_category(self) -> None:
        counts = [EquationCounts(1, 0, 2), EquationCounts(0, 0, 0), EquationCounts(3, 1, 0), EquationCounts(0, 2, 1)]
        slots, totals = assign_equation_slots(counts)
        assert totals == EquationCounts(4, 3, 3)
        for category in range(3):
            covered = []
            for s, c in zip(slots, counts):
                covered.extend(range(s[category], s[category] + c[category]))
            assert covered == list(range(totals[category]))

    def test_empty_category_gets_running_offset(self) -> None:
        slots, _ = assign_equation_slots([EquationCounts(2, 0, 0), EquationCounts(0, 0, 0)])
        assert tuple(slots[1]) == (2, 0, 0)

    def test_negative_count_rejected(self) -> None:
        with pytest.raises(ContractViolation):
            assign_equation_slots([EquationCounts(-1, 0, 0)])

    def test_changed_counts_reassign_slots(self, mixed, random_state) -> None:
        subsystem, (rod, speed, ball, _) = mixed
        rod.set_default_num_constraint_equations(1, 0, 0)
        state = subsystem.realize(random_state(), Stage.MODEL)
        assert tuple(ball.get_constraint_equation_slots(state)) == (1, 1, 0)
        assert rod.get_default_num_constraint_equations() == EquationCounts(1, 0, 0)
        with pytest.raises(ValueError):
            rod.set_default_num_constraint_equations(0, -1, 0)


class TestExtraction:
    def test_count_mismatch(self, mixed, random_state) -> None:
        subsystem, (rod, _, ball, _) = mixed
        state = subsystem.realize(random_state())
        with pytest.raises(EquationCountMismatch):
            rod.get_position_errors(state, 2)
        with pytest.raises(EquationCountMismatch):
            ball.get_velocity_errors(state, 4)
        with pytest.raises(EquationCountMismatch):
            ball.get_acceleration_errors(state, 2)

    def test_stage_required(self, mixed, random_state) -> None:
        subsystem, (rod, _, ball, _) = mixed
        state = subsystem.realize(random_state(), Stage.POSITION)
        rod.get_position_errors(state, 1)
        with pytest.raises(StageNotRealizedError):
            ball.get_velocity_errors(state, 3)
        with pytest.raises(StageNotRealizedError):
            ball.get_acceleration_errors(state, 3)
        with pytest.raises(StageNotRealizedError):
            subsystem.get_uerr(state)
        with pytest.raises(StageNotRealizedError):
            ball.get_body_velocity(state, 0)

        early = subsystem.realize(random_state(), Stage.TOPOLOGY)
        with pytest.raises(StageNotRealizedError):
            rod.get_num_constraint_equations(early)
        assert rod.calc_num_constraint_equations(early) == EquationCounts(1, 0, 0)

    def test_caller_buffer(self, mixed, random_state) -> None:
        subsystem, (_, _, ball, _) = mixed
        state = subsystem.realize(random_state())
        out = np.full(5, np.nan)
        result = ball.get_velocity_errors(state, 3, out)
        assert result is out
        assert np.allclose(out[:3], state.uerr[1:4])
        assert np.isnan(out[3:]).all()
        with pytest.raises(BufferTooSmallError):
            ball.get_acceleration_errors(state, 3, np.zeros(2))

    def test_multipliers(self, mixed, random_state) -> None:
        subsystem, (rod, speed, ball, no_slip) = mixed
        state = subsystem.realize(random_state())
        assert np.allclose(ball.get_multipliers(state, 3), 0)

        lam = jnp.arange(6.0)
        state.set_multipliers(lam)
        assert np.allclose(rod.get_multipliers(state, 1), [0.0])
        assert np.allclose(ball.get_multipliers(state, 3), [1.0, 2.0, 3.0])
        assert np.allclose(speed.get_multipliers(state, 1), [4.0])
        assert np.allclose(no_slip.get_multipliers(state, 1), [5.0])
        with pytest.raises(EquationCountMismatch):
            state.set_multipliers(jnp.zeros(5))


class TestGeneralizedForces:
    def test_system_force_is_sum_of_constraint_forces(self, mixed, random_state, rng) -> None:
        subsystem, constraints = mixed
        state = subsystem.realize(random_state(), Stage.POSITION)
        lam = jnp.asarray(rng.normal(size=6))

        total = subsystem.calc_g_transpose_lambda(state, lam)

        state.set_multipliers(lam)
        expected = jnp.zeros(subsystem.matter.nu)
        for c in constraints:
            mp, mv, ma = c.get_num_constraint_equations(state)
            share = c.get_multipliers(state, mp + mv + ma)
            expected = expected + c.calc_generalized_force_from_multipliers(state, mp, mv, ma, share)
        assert np.allclose(total, expected)
        with pytest.raises(EquationCountMismatch):
            subsystem.calc_g_transpose_lambda(state, jnp.zeros(3))

    def test_converter_is_required(self, tree_matter: TreeMatter, random_state) -> None:
        subsystem = ConstraintSubsystem(tree_matter)
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        subsystem.adopt_constraint(rod)
        state = subsystem.realize(random_state(), Stage.POSITION)
        body_forces, _ = rod.calc_constraint_forces_from_multipliers(state, 1, 0, 0, jnp.ones(1))
        assert body_forces.shape == (2, 2, 3)
        with pytest.raises(NotImplementedError):
            rod.calc_generalized_force_from_multipliers(state, 1, 0, 0, jnp.ones(1))

    def test_segment_count_must_match(self, mixed, random_state) -> None:
        subsystem, (rod, speed, _, _) = mixed
        state = subsystem.realize(random_state(), Stage.POSITION)
        with pytest.raises(EquationCountMismatch):
            rod.calc_constraint_forces_from_multipliers(state, 0, 1, 0, jnp.ones(1))
        with pytest.raises(EquationCountMismatch):
            speed.calc_constraint_forces_from_multipliers(state, 0, 1, 0, jnp.ones(2))


class TestAdoption:
    def test_bodies_frozen_after_adoption(self, mixed) -> None:
        _, (rod, speed, _, _) = mixed
        with pytest.raises(ContractViolation):
            rod.add_constrained_body(4)
        with pytest.raises(ContractViolation):
            speed.add_constrained_mobilizer(4)

    def test_adopt_twice(self, mixed, tree_matter: TreeMatter) -> None:
        subsystem, (rod, _, _, _) = mixed
        with pytest.raises(ContractViolation):
            subsystem.adopt_constraint(rod)
        with pytest.raises(ContractViolation):
            ConstraintSubsystem(tree_matter).adopt_constraint(rod)

    def test_unknown_body(self, subsystem: ConstraintSubsystem) -> None:
        with pytest.raises(ContractViolation):
            subsystem.adopt_constraint(Rod(1, jnp.zeros(3), 9, jnp.zeros(3), 1.0))
        assert subsystem.num_constraints == 0

    def test_unadopted_constraint(self) -> None:
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        with pytest.raises(ContractViolation):
            rod.subsystem
        with pytest.raises(StageNotRealizedError):
            rod.ancestor

    def test_constraint_indices(self, mixed) -> None:
        subsystem, constraints = mixed
        assert [c.constraint_index for c in constraints] == [0, 1, 2, 3]
        assert subsystem.get_constraint(2) is constraints[2]
        with pytest.raises(ContractViolation):
            subsystem.get_constraint(4)

    def test_adopt_from_configs(self, subsystem: ConstraintSubsystem, random_state) -> None:
        indices = subsystem.adopt_from_configs(
            [
                RodConfig(body1="free1", body2="slider", point2=[0.0, 0.0, 0.1], length=0.4),
                BallConfig(body1="free2", body2=4),
                ConstantSpeedConfig(mobilizer="pin", speed=1.0),
            ]
        )
        assert indices == [0, 1, 2]
        rod, ball, speed = subsystem.constraints
        assert isinstance(rod, Rod) and rod.length == 0.4
        assert ball.constrained_bodies() == [2, 4]
        assert speed.constrained_mobilizers() == [3]
        state = subsystem.realize(random_state())
        assert state.udoterr.shape == (5,)
        with pytest.raises(ValueError):
            subsystem.adopt_from_configs([RodConfig(body1="nowhere")])
