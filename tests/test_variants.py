"""
Properties every built-in constraint must have, checked on random states of
the mixed tree: error rates are the time derivatives of the errors, forces
are the transpose of the velocity-error map, and body forces balance.
"""

from typing import Callable

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from mbconstraints import (
    Ball,
    ConstantAngle,
    ConstantOrientation,
    ConstantSpeed,
    Constraint,
    ConstraintSubsystem,
    NoSlip1D,
    PointInPlane,
    PointOnLine,
    Rod,
    Stage,
    StageNotRealizedError,
    State,
    Transform,
    Weld,
)
from mbconstraints.spatial import axis_angle_to_rotation


def _rotation(axis: list[float], angle: float) -> jax.Array:
    axis = jnp.asarray(axis, dtype=float)
    return axis_angle_to_rotation(axis / jnp.linalg.norm(axis), angle)


def _weld_with_moved_follower_point() -> Weld:
    weld = Weld(3, Transform(jnp.eye(3), jnp.zeros(3)), 2, Transform(jnp.eye(3), jnp.zeros(3)))
    weld.follower_point = jnp.array([0.5, -0.4, 0.3])
    return weld


# Bodies of the fixture tree: 1 free1, 2 free2, 3 pin (on free1), 4 slider (on pin).
CASES: dict[str, tuple[Callable[[], Constraint], slice | None]] = {
    "rod_moving_ancestor": (lambda: Rod(3, jnp.array([0.1, 0.2, 0.0]), 4, jnp.array([0.0, -0.3, 0.4]), 0.7), None),
    "rod_ground_ancestor": (lambda: Rod(2, jnp.array([0.5, 0.0, 0.1]), 4, jnp.array([0.2, 0.2, 0.2]), 1.3), None),
    "point_in_plane": (
        lambda: PointInPlane(1, jnp.array([0.0, 1.0, 1.0]), 0.25, 4, jnp.array([0.3, 0.0, -0.1])),
        None,
    ),
    "point_on_line": (
        lambda: PointOnLine(2, jnp.array([1.0, 2.0, 0.5]), jnp.array([0.1, 0.0, 0.3]), 3, jnp.array([0.0, 0.4, 0.0])),
        None,
    ),
    "constant_angle": (
        lambda: ConstantAngle(1, jnp.array([1.0, 0.0, 0.0]), 2, jnp.array([0.0, 1.0, 1.0]), 1.1),
        None,
    ),
    "ball_moving_ancestor": (lambda: Ball(3, jnp.array([0.2, 0.1, 0.0]), 4, jnp.array([-0.1, 0.0, 0.3])), slice(0, 3)),
    "ball_ground_ancestor": (lambda: Ball(2, jnp.array([0.0, 0.5, 0.0]), 4, jnp.array([0.1, 0.1, 0.1])), slice(0, 3)),
    "constant_orientation": (
        lambda: ConstantOrientation(1, _rotation([1, 1, 0], 0.3), 2, _rotation([0, 0, 1], -0.7)),
        None,
    ),
    "weld": (
        lambda: Weld(
            3,
            Transform(_rotation([0, 1, 0], 0.4), jnp.array([0.1, 0.0, 0.2])),
            2,
            Transform(_rotation([1, 0, 1], 1.2), jnp.array([0.0, -0.2, 0.1])),
        ),
        slice(3, 6),
    ),
    "weld_moved_follower_point": (_weld_with_moved_follower_point, slice(3, 6)),
    "no_slip_ground_ancestor": (
        lambda: NoSlip1D(1, jnp.array([0.2, 0.1, -0.3]), jnp.array([1.0, 0.0, 1.0]), 3, 2),
        None,
    ),
    "no_slip_moving_ancestor": (
        lambda: NoSlip1D(3, jnp.array([0.0, 0.3, 0.1]), jnp.array([0.0, 1.0, 0.0]), 4, 1),
        None,
    ),
    "constant_speed_pin": (lambda: ConstantSpeed(3, 0.5), None),
    "constant_speed_free": (lambda: ConstantSpeed(2, -1.5, which_u=4), None),
}


def in_base_frame(constraint: Constraint, state: State, errors: jax.Array, rows: slice | None) -> jax.Array:
    """Re-express the vector rows whose rates are taken in the base body frame."""
    if rows is None:
        return errors
    R_AB = constraint.get_body_rotation(state, 0)
    return errors.at[rows].set(R_AB.T @ errors[rows])


@pytest.fixture(params=list(CASES))
def case(request, subsystem: ConstraintSubsystem) -> tuple[Constraint, slice | None]:
    factory, rows = CASES[request.param]
    constraint = factory()
    subsystem.adopt_constraint(constraint)
    return constraint, rows


def _realize(subsystem: ConstraintSubsystem, q: jax.Array, u: jax.Array, udot: jax.Array, stage: Stage) -> State:
    return subsystem.realize(State(q=q, u=u, udot=udot), stage)


class TestDifferentiationConsistency:
    def test_position_error_rate(self, subsystem: ConstraintSubsystem, case, random_state) -> None:
        constraint, rows = case
        s = subsystem.realize(random_state())
        mp, mv, _ = constraint.get_num_constraint_equations(s)
        if not mp:
            pytest.skip("no holonomic equations")

        def perr(q: jax.Array) -> jax.Array:
            st = _realize(subsystem, q, s.u, s.udot, Stage.POSITION)
            return in_base_frame(constraint, st, constraint.get_position_errors(st, mp), rows)

        qdot = subsystem.matter.calc_qdot(s.q, s.u)
        _, perr_dot = jax.jvp(perr, (s.q,), (qdot,))
        pverr = constraint.get_velocity_errors(s, mp + mv)[:mp]
        assert np.allclose(perr_dot, in_base_frame(constraint, s, pverr, rows), atol=1e-9)

    def test_velocity_error_rate(self, subsystem: ConstraintSubsystem, case, random_state) -> None:
        constraint, rows = case
        s = subsystem.realize(random_state())
        mp, mv, ma = constraint.get_num_constraint_equations(s)

        def uerr(q: jax.Array, u: jax.Array) -> jax.Array:
            st = _realize(subsystem, q, u, s.udot, Stage.VELOCITY)
            return in_base_frame(constraint, st, constraint.get_velocity_errors(st, mp + mv), rows)

        qdot = subsystem.matter.calc_qdot(s.q, s.u)
        _, uerr_dot = jax.jvp(uerr, (s.q, s.u), (qdot, s.udot))
        udoterr = constraint.get_acceleration_errors(s, mp + mv + ma)[: mp + mv]
        assert np.allclose(uerr_dot, in_base_frame(constraint, s, udoterr, rows), atol=1e-9)


class TestForces:
    def test_virtual_work_duality(self, subsystem: ConstraintSubsystem, case, random_state, rng) -> None:
        """f . u = lambda . (uerr(u) - uerr(0)) for f = G^T lambda."""
        constraint, _ = case
        s = subsystem.realize(random_state(), Stage.VELOCITY)
        mp, mv, _ = constraint.get_num_constraint_equations(s)
        lam = jnp.asarray(rng.normal(size=mp + mv))

        f = constraint.calc_generalized_force_from_multipliers(s, mp, mv, 0, lam)

        s0 = _realize(subsystem, s.q, jnp.zeros_like(s.u), s.udot, Stage.VELOCITY)
        uerr_u = constraint.get_velocity_errors(s, mp + mv)
        uerr_0 = constraint.get_velocity_errors(s0, mp + mv)
        assert f.shape == s.u.shape
        assert np.isclose(f @ s.u, lam @ (uerr_u - uerr_0), atol=1e-9)

    def test_body_forces_balance(self, subsystem: ConstraintSubsystem, case, random_state, rng) -> None:
        """Net force and net moment about the ancestor origin vanish."""
        constraint, _ = case
        s = subsystem.realize(random_state(), Stage.POSITION)
        mp, mv, _ = constraint.get_num_constraint_equations(s)
        lam = jnp.asarray(rng.normal(size=mp + mv))

        body_forces, mobility_forces = constraint.calc_constraint_forces_from_multipliers(s, mp, mv, 0, lam)

        assert body_forces.shape == (constraint.num_constrained_bodies, 2, 3)
        assert mobility_forces.shape == (constraint.get_num_constrained_u(s),)
        net_force = jnp.sum(body_forces[:, 1], axis=0)
        net_moment = jnp.sum(body_forces[:, 0], axis=0)
        for b in range(constraint.num_constrained_bodies):
            net_moment = net_moment + jnp.cross(constraint.get_body_origin_location(s, b), body_forces[b, 1])
        assert np.allclose(net_force, 0, atol=1e-10)
        assert np.allclose(net_moment, 0, atol=1e-10)

    def test_segments_can_be_left_out(self, subsystem: ConstraintSubsystem, case, random_state, rng) -> None:
        constraint, _ = case
        s = subsystem.realize(random_state(), Stage.POSITION)
        body_forces, mobility_forces = constraint.calc_constraint_forces_from_multipliers(s, 0, 0, 0, jnp.zeros(0))
        assert np.allclose(body_forces, 0)
        assert np.allclose(mobility_forces, 0)


class TestAccessModes:
    def test_explicit_and_fetched_caches_agree(self, subsystem: ConstraintSubsystem, case, random_state) -> None:
        constraint, _ = case
        s = subsystem.realize(random_state())
        for b in range(constraint.num_constrained_bodies):
            station = jnp.array([0.1, -0.2, 0.3])
            assert np.allclose(
                constraint.calc_station_location(s, b, station, s.position_cache),
                constraint.calc_station_location(s, b, station),
            )
            assert np.allclose(
                constraint.calc_station_velocity(s, b, station, s.velocity_cache),
                constraint.calc_station_velocity(s, b, station),
            )
            assert np.allclose(
                constraint.calc_station_acceleration(s, b, station, s.acceleration_cache),
                constraint.calc_station_acceleration(s, b, station),
            )

    def test_ancestor_measures_itself_at_rest(self, subsystem: ConstraintSubsystem, case, random_state) -> None:
        constraint, _ = case
        s = subsystem.realize(random_state())
        if constraint.ancestor not in constraint.constrained_bodies():
            pytest.skip("ancestor is not a constrained body")
        b = constraint.get_constrained_body_index(constraint.ancestor)
        assert np.allclose(constraint.get_body_rotation(s, b), np.eye(3))
        assert np.allclose(constraint.get_body_origin_location(s, b), 0)
        assert np.allclose(constraint.get_body_angular_velocity(s, b), 0)
        assert np.allclose(constraint.get_body_origin_velocity(s, b), 0)
        assert np.allclose(constraint.get_body_angular_acceleration(s, b), 0)
        assert np.allclose(constraint.get_body_origin_acceleration(s, b), 0)


class TestParameterChanges:
    def test_weld_follower_point_moves_frame_f(self) -> None:
        weld = _weld_with_moved_follower_point()
        assert np.allclose(weld.frame_f.p, [0.5, -0.4, 0.3])
        assert np.allclose(weld.frame_f.R, np.eye(3))
        weld.frame_f = Transform(jnp.eye(3), jnp.array([0.0, 0.1, 0.0]))
        assert np.allclose(weld.follower_point, [0.0, 0.1, 0.0])

    def test_point_on_line_basis_follows_direction(self, subsystem: ConstraintSubsystem, random_state) -> None:
        line = PointOnLine(2, jnp.array([1.0, 0.0, 0.0]), jnp.array([0.1, 0.0, 0.3]), 3, jnp.array([0.0, 0.4, 0.0]))
        subsystem.adopt_constraint(line)
        state = random_state()
        subsystem.realize(state, Stage.POSITION)
        assert np.allclose(line.basis @ jnp.array([1.0, 0.0, 0.0]), 0)

        line.direction = jnp.array([0.0, 1.0, 1.0])
        with pytest.raises(StageNotRealizedError):
            line.get_position_errors(state, 2)
        subsystem.realize(state, Stage.POSITION)

        z = jnp.array([0.0, 1.0, 1.0]) / jnp.sqrt(2.0)
        assert np.allclose(line.basis @ z, 0, atol=1e-12)
        assert np.allclose(line.basis @ line.basis.T, np.eye(2), atol=1e-12)
        p_AS = line.calc_station_location(state, 1, jnp.array([0.0, 0.4, 0.0]))
        p_BS = line.get_body_transform(state, 0).apply_inverse(p_AS)
        expected = line.basis @ (p_BS - jnp.array([0.1, 0.0, 0.3]))
        assert np.allclose(line.get_position_errors(state, 2), expected)

    def test_constant_angle_cosine_follows_angle(self, subsystem: ConstraintSubsystem, random_state) -> None:
        angle = ConstantAngle(1, jnp.array([1.0, 0.0, 0.0]), 2, jnp.array([0.0, 1.0, 1.0]), 1.1)
        subsystem.adopt_constraint(angle)
        state = subsystem.realize(random_state(), Stage.POSITION)
        before = angle.get_position_errors(state, 1)

        angle.angle = 0.4
        with pytest.raises(StageNotRealizedError):
            angle.get_position_errors(state, 1)
        subsystem.realize(state, Stage.POSITION)

        f_A = angle.get_body_rotation(state, 1) @ (jnp.array([0.0, 1.0, 1.0]) / jnp.sqrt(2.0))
        b_A = angle.get_body_rotation(state, 0) @ jnp.array([1.0, 0.0, 0.0])
        after = angle.get_position_errors(state, 1)
        assert np.allclose(after, [b_A @ f_A - np.cos(0.4)])
        assert np.allclose(after - before, [np.cos(1.1) - np.cos(0.4)])
