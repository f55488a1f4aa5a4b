"""Pure JAX matter: a tree of rigid bodies connected by free, pin and slider mobilizers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import jax
import jax.numpy as jnp

from .force_conversion import GeneralizedForceConverter
from .indices import GROUND, MobilizedBodyIndex
from .matter import MatterSubsystem
from .spatial import as_unit_vec3, as_vec3, axis_angle_to_rotation
from .state import (
    AccelerationCache,
    ModelCache,
    PositionCache,
    State,
    VelocityCache,
)
from .utils import quat_deriv, quat_to_rotation


class Mobilizer(ABC):
    """
    Motion of a body B relative to its parent P. Velocities and accelerations
    are of B's origin, taken in P and expressed in P.
    """

    nq: int
    nu: int

    @abstractmethod
    def default_q(self) -> jax.Array:
        raise NotImplementedError

    @abstractmethod
    def pose(self, q: jax.Array) -> tuple[jax.Array, jax.Array]:
        """(R_PB, p_PB)."""
        raise NotImplementedError

    @abstractmethod
    def velocity(self, q: jax.Array, u: jax.Array) -> tuple[jax.Array, jax.Array]:
        """(w_PB, v_PB)."""
        raise NotImplementedError

    @abstractmethod
    def acceleration(self, q: jax.Array, u: jax.Array, udot: jax.Array) -> tuple[jax.Array, jax.Array]:
        """(b_PB, a_PB)."""
        raise NotImplementedError

    @abstractmethod
    def qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        raise NotImplementedError

    @abstractmethod
    def generalized_force(self, q: jax.Array, torque: jax.Array, force: jax.Array) -> jax.Array:
        """Project a spatial force at B's origin, expressed in P, onto this mobilizer's u's."""
        raise NotImplementedError


class FreeMobilizer(Mobilizer):
    """q = [position, quaternion (w, x, y, z)], u = [linear velocity in P, angular velocity in B]."""

    nq = 7
    nu = 6

    def __init__(self, position: jax.Array | None = None, quaternion: jax.Array | None = None) -> None:
        self._position = jnp.zeros(3) if position is None else as_vec3(position, "position")
        if quaternion is None:
            self._quaternion = jnp.array([1.0, 0.0, 0.0, 0.0])
        else:
            quaternion = jnp.asarray(quaternion, dtype=float)
            self._quaternion = quaternion / jnp.linalg.norm(quaternion)

    def default_q(self) -> jax.Array:
        return jnp.concatenate([self._position, self._quaternion])

    def pose(self, q: jax.Array) -> tuple[jax.Array, jax.Array]:
        return quat_to_rotation(q[3:]), q[:3]

    def velocity(self, q: jax.Array, u: jax.Array) -> tuple[jax.Array, jax.Array]:
        return quat_to_rotation(q[3:]) @ u[3:], u[:3]

    def acceleration(self, q: jax.Array, u: jax.Array, udot: jax.Array) -> tuple[jax.Array, jax.Array]:
        # d/dt (R w_B) = R dw_B/dt since R (w_B x w_B) vanishes.
        return quat_to_rotation(q[3:]) @ udot[3:], udot[:3]

    def qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        return jnp.concatenate([u[:3], quat_deriv(q[3:], u[3:])])

    def generalized_force(self, q: jax.Array, torque: jax.Array, force: jax.Array) -> jax.Array:
        return jnp.concatenate([force, quat_to_rotation(q[3:]).T @ torque])


class PinMobilizer(Mobilizer):
    """Rotation by angle q about a fixed axis through `location`, where B's origin sits."""

    nq = 1
    nu = 1

    def __init__(self, axis: jax.Array, location: jax.Array | None = None, angle: float = 0.0) -> None:
        self._axis = as_unit_vec3(axis, "axis")
        self._location = jnp.zeros(3) if location is None else as_vec3(location, "location")
        self._angle = float(angle)

    def default_q(self) -> jax.Array:
        return jnp.array([self._angle])

    def pose(self, q: jax.Array) -> tuple[jax.Array, jax.Array]:
        return axis_angle_to_rotation(self._axis, q[0]), self._location

    def velocity(self, q: jax.Array, u: jax.Array) -> tuple[jax.Array, jax.Array]:
        return self._axis * u[0], jnp.zeros(3)

    def acceleration(self, q: jax.Array, u: jax.Array, udot: jax.Array) -> tuple[jax.Array, jax.Array]:
        return self._axis * udot[0], jnp.zeros(3)

    def qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        return u

    def generalized_force(self, q: jax.Array, torque: jax.Array, force: jax.Array) -> jax.Array:
        return jnp.atleast_1d(self._axis @ torque)


class SliderMobilizer(Mobilizer):
    """Translation by q along a fixed axis starting at `location`."""

    nq = 1
    nu = 1

    def __init__(self, axis: jax.Array, location: jax.Array | None = None, offset: float = 0.0) -> None:
        self._axis = as_unit_vec3(axis, "axis")
        self._location = jnp.zeros(3) if location is None else as_vec3(location, "location")
        self._offset = float(offset)

    def default_q(self) -> jax.Array:
        return jnp.array([self._offset])

    def pose(self, q: jax.Array) -> tuple[jax.Array, jax.Array]:
        return jnp.eye(3), self._location + q[0] * self._axis

    def velocity(self, q: jax.Array, u: jax.Array) -> tuple[jax.Array, jax.Array]:
        return jnp.zeros(3), self._axis * u[0]

    def acceleration(self, q: jax.Array, u: jax.Array, udot: jax.Array) -> tuple[jax.Array, jax.Array]:
        return jnp.zeros(3), self._axis * udot[0]

    def qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        return u

    def generalized_force(self, q: jax.Array, torque: jax.Array, force: jax.Array) -> jax.Array:
        return jnp.atleast_1d(self._axis @ force)


@dataclass
class _Body:
    name: str
    parent: MobilizedBodyIndex
    mobilizer: Mobilizer | None


class TreeMatter(MatterSubsystem):
    """
    Bodies are added parents first, so a body's index is always larger than its
    parent's and a single pass in index order visits every parent before its
    children.
    """

    def __init__(self) -> None:
        self._bodies: list[_Body] = [_Body("ground", GROUND, None)]

    def add_body(
        self,
        mobilizer: Mobilizer,
        parent: MobilizedBodyIndex = GROUND,
        name: str | None = None,
    ) -> MobilizedBodyIndex:
        if not 0 <= parent < len(self._bodies):
            raise ValueError(f"Parent body {parent} does not exist")
        index = MobilizedBodyIndex(len(self._bodies))
        name = name or f"body{index}"
        if any(b.name == name for b in self._bodies):
            raise ValueError(f"Body name '{name}' is already used")
        self._bodies.append(_Body(name, MobilizedBodyIndex(int(parent)), mobilizer))
        return index

    @property
    def num_bodies(self) -> int:
        return len(self._bodies)

    @property
    def nq(self) -> int:
        return sum(m.nq for m in self._mobilizers())

    @property
    def nu(self) -> int:
        return sum(m.nu for m in self._mobilizers())

    def _mobilizers(self) -> list[Mobilizer]:
        return [b.mobilizer for b in self._bodies if b.mobilizer is not None]

    def parent(self, body: MobilizedBodyIndex) -> MobilizedBodyIndex:
        if body == GROUND:
            raise ValueError("Ground has no parent")
        return self._bodies[body].parent

    def find_body_by_name(self, name: str) -> MobilizedBodyIndex:
        for i, b in enumerate(self._bodies):
            if b.name == name:
                return MobilizedBodyIndex(i)
        raise ValueError(f"No body named '{name}'")

    def default_q(self) -> jax.Array:
        parts = [m.default_q() for m in self._mobilizers()]
        return jnp.concatenate(parts) if parts else jnp.zeros(0)

    def realize_model(self) -> ModelCache:
        q_start, nq, u_start, nu = [], [], [], []
        q_next = u_next = 0
        for b in self._bodies:
            m = b.mobilizer
            q_start.append(q_next)
            u_start.append(u_next)
            nq.append(m.nq if m else 0)
            nu.append(m.nu if m else 0)
            q_next += nq[-1]
            u_next += nu[-1]
        return ModelCache(tuple(q_start), tuple(nq), tuple(u_start), tuple(nu))

    def _slices(self, state: State, i: int) -> tuple[slice, slice]:
        mc = state.model_cache
        assert mc is not None
        return (
            slice(mc.q_start[i], mc.q_start[i] + mc.nq[i]),
            slice(mc.u_start[i], mc.u_start[i] + mc.nu[i]),
        )

    def realize_position(self, state: State) -> PositionCache:
        R = [jnp.eye(3)]
        p = [jnp.zeros(3)]
        for i, b in enumerate(self._bodies[1:], start=1):
            qs, _ = self._slices(state, i)
            R_PB, p_PB = b.mobilizer.pose(state.q[qs])
            R.append(R[b.parent] @ R_PB)
            p.append(p[b.parent] + R[b.parent] @ p_PB)
        return PositionCache(jnp.stack(R), jnp.stack(p))

    def realize_velocity(self, state: State) -> VelocityCache:
        pc = state.position_cache
        assert pc is not None
        w = [jnp.zeros(3)]
        v = [jnp.zeros(3)]
        for i, b in enumerate(self._bodies[1:], start=1):
            qs, us = self._slices(state, i)
            w_rel, v_rel = b.mobilizer.velocity(state.q[qs], state.u[us])
            R_GP = pc.R[b.parent]
            r = pc.p[i] - pc.p[b.parent]
            w.append(w[b.parent] + R_GP @ w_rel)
            v.append(v[b.parent] + jnp.cross(w[b.parent], r) + R_GP @ v_rel)
        return VelocityCache(jnp.stack(w), jnp.stack(v))

    def realize_acceleration(self, state: State) -> AccelerationCache:
        pc, vc = state.position_cache, state.velocity_cache
        assert pc is not None and vc is not None
        b_G = [jnp.zeros(3)]
        a_G = [jnp.zeros(3)]
        for i, body in enumerate(self._bodies[1:], start=1):
            qs, us = self._slices(state, i)
            q, u, udot = state.q[qs], state.u[us], state.udot[us]
            w_rel, v_rel = body.mobilizer.velocity(q, u)
            b_rel, a_rel = body.mobilizer.acceleration(q, u, udot)
            P = body.parent
            R_GP = pc.R[P]
            w_P = vc.w[P]
            r = pc.p[i] - pc.p[P]
            b_G.append(b_G[P] + R_GP @ b_rel + jnp.cross(w_P, R_GP @ w_rel))
            a_G.append(
                a_G[P]
                + jnp.cross(b_G[P], r)
                + jnp.cross(w_P, jnp.cross(w_P, r))
                + 2.0 * jnp.cross(w_P, R_GP @ v_rel)
                + R_GP @ a_rel
            )
        return AccelerationCache(jnp.stack(b_G), jnp.stack(a_G))

    def calc_qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        parts = []
        q_next = u_next = 0
        for m in self._mobilizers():
            parts.append(m.qdot(q[q_next : q_next + m.nq], u[u_next : u_next + m.nu]))
            q_next += m.nq
            u_next += m.nu
        return jnp.concatenate(parts) if parts else jnp.zeros(0)

    def calc_generalized_forces(self, state: State, body_forces: jax.Array, mobility_forces: jax.Array) -> jax.Array:
        """Sweep from the leaves inward, shifting each body's accumulated force to its parent's origin."""
        pc = state.position_cache
        assert pc is not None
        torque = list(body_forces[:, 0])
        force = list(body_forces[:, 1])
        f = jnp.zeros(self.nu)
        for i in range(len(self._bodies) - 1, 0, -1):
            body = self._bodies[i]
            P = body.parent
            qs, us = self._slices(state, i)
            R_GP = pc.R[P]
            f = f.at[us].set(body.mobilizer.generalized_force(state.q[qs], R_GP.T @ torque[i], R_GP.T @ force[i]))
            torque[P] = torque[P] + torque[i] + jnp.cross(pc.p[i] - pc.p[P], force[i])
            force[P] = force[P] + force[i]
        return f + mobility_forces


class TreeForceConverter(GeneralizedForceConverter):
    def __init__(self, matter: TreeMatter) -> None:
        self._matter = matter

    def calc_generalized_forces(self, state: State, body_forces: jax.Array, mobility_forces: jax.Array) -> jax.Array:
        return self._matter.calc_generalized_forces(state, body_forces, mobility_forces)
