import jax.numpy as jnp
import numpy as np
import pytest

from mbconstraints import (
    ConstraintSubsystem,
    FreeMobilizer,
    Rod,
    Stage,
    StageNotRealizedError,
    State,
    TreeForceConverter,
    TreeMatter,
)


@pytest.fixture
def two_free_bodies() -> ConstraintSubsystem:
    """Two free bodies, both at the identity pose by default."""
    matter = TreeMatter()
    matter.add_body(FreeMobilizer(), name="A")
    matter.add_body(FreeMobilizer(), name="B")
    return ConstraintSubsystem(matter, TreeForceConverter(matter))


class TestRodValues:
    def test_coincident_endpoints(self, two_free_bodies: ConstraintSubsystem) -> None:
        """Both endpoints at the shared origin: perr = (0 - 1) / 2."""
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        two_free_bodies.adopt_constraint(rod)
        state = two_free_bodies.realize(two_free_bodies.realize_topology(), Stage.POSITION)
        assert np.allclose(rod.get_position_errors(state, 1), [-0.5])

    def test_endpoints_one_apart(self, two_free_bodies: ConstraintSubsystem) -> None:
        rod = Rod(1, jnp.zeros(3), 2, jnp.array([1.0, 0.0, 0.0]), 1.0)
        two_free_bodies.adopt_constraint(rod)
        state = two_free_bodies.realize(two_free_bodies.realize_topology(), Stage.POSITION)
        assert np.allclose(rod.get_position_errors(state, 1), [0.0])

    def test_bodies_one_apart(self, two_free_bodies: ConstraintSubsystem) -> None:
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        two_free_bodies.adopt_constraint(rod)
        state = two_free_bodies.realize_topology()
        q = state.q.at[7:10].set(jnp.array([0.0, 0.6, 0.8]))
        state.set_q(q)
        state = two_free_bodies.realize(state, Stage.POSITION)
        assert np.allclose(state.qerr, [0.0])

    def test_rates_of_separating_bodies(self, two_free_bodies: ConstraintSubsystem) -> None:
        """B at (2, 0, 0) moving along x at 3 with acceleration 1: pverr = 6, paerr = 2 + 9."""
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        two_free_bodies.adopt_constraint(rod)
        state = two_free_bodies.realize_topology()
        state.set_q(state.q.at[7].set(2.0))
        state.set_u(state.u.at[6].set(3.0))
        state.set_udot(state.udot.at[6].set(1.0))
        state = two_free_bodies.realize(state)
        assert np.allclose(rod.get_position_errors(state, 1), [1.5])
        assert np.allclose(rod.get_velocity_errors(state, 1), [6.0])
        assert np.allclose(rod.get_acceleration_errors(state, 1), [11.0])

    def test_invalid_rod(self) -> None:
        with pytest.raises(ValueError):
            Rod(1, jnp.zeros(3), 1, jnp.zeros(3), 1.0)
        with pytest.raises(ValueError):
            Rod(1, jnp.zeros(3), 2, jnp.zeros(3), -1.0)
        with pytest.raises(ValueError):
            Rod(1, jnp.zeros(2), 2, jnp.zeros(3), 1.0)


class TestRodFiniteDifferences:
    def test_central_difference_matches_position_dot_error(
        self, subsystem: ConstraintSubsystem, random_state
    ) -> None:
        rod = Rod(3, jnp.array([0.1, 0.2, 0.0]), 4, jnp.array([0.0, -0.3, 0.4]), 0.7)
        subsystem.adopt_constraint(rod)
        state = subsystem.realize(random_state(), Stage.VELOCITY)
        qdot = subsystem.matter.calc_qdot(state.q, state.u)

        h = 1e-6

        def perr(q):
            st = subsystem.realize(State(q=q, u=state.u, udot=state.udot), Stage.POSITION)
            return rod.get_position_errors(st, 1)[0]

        fd = (perr(state.q + h * qdot) - perr(state.q - h * qdot)) / (2 * h)
        assert np.isclose(fd, rod.get_velocity_errors(state, 1)[0], rtol=1e-6, atol=1e-8)


class TestRodParameters:
    def test_length_change_invalidates_realized_state(self, two_free_bodies: ConstraintSubsystem) -> None:
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        two_free_bodies.adopt_constraint(rod)
        state = two_free_bodies.realize(two_free_bodies.realize_topology())
        version = two_free_bodies.topology_version

        rod.length = 2.0

        assert two_free_bodies.topology_version == version + 1
        with pytest.raises(StageNotRealizedError):
            rod.get_position_errors(state, 1)
        with pytest.raises(StageNotRealizedError):
            two_free_bodies.get_qerr(state)
        state = two_free_bodies.realize(state)
        assert state.stage == Stage.ACCELERATION
        assert np.allclose(rod.get_position_errors(state, 1), [-2.0])

    def test_point_setters(self, two_free_bodies: ConstraintSubsystem) -> None:
        rod = Rod(1, jnp.zeros(3), 2, jnp.zeros(3), 1.0)
        two_free_bodies.adopt_constraint(rod)
        rod.point2 = jnp.array([0.0, 0.0, 3.0])
        state = two_free_bodies.realize(two_free_bodies.realize_topology(), Stage.POSITION)
        assert np.allclose(rod.point2, [0.0, 0.0, 3.0])
        assert np.allclose(state.qerr, [4.0])
