"""The built-in constraints and their configs."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import jax
import jax.numpy as jnp

from .constraints import Constraint, ConstraintConfig, ForcePair
from .errors import StageNotRealizedError
from .indices import ConstrainedBodyIndex, MobilizedBodyIndex, MobilizerUIndex
from .spatial import Transform, as_rotation, as_unit_vec3, as_vec3, perp
from .state import AccelerationCache, PositionCache, State, VelocityCache

if TYPE_CHECKING:
    from .matter import MatterSubsystem


def _distinct(body1: MobilizedBodyIndex, body2: MobilizedBodyIndex) -> None:
    if int(body1) == int(body2):
        raise ValueError(f"The two constrained bodies must differ, both are {body1}")


def _scalar(value: jax.Array) -> jax.Array:
    return jnp.atleast_1d(value)


# ROD


class Rod(Constraint):
    """
    Keeps station point1 on body1 at a fixed distance from station point2 on body2.

    perr = (|p|^2 - d^2) / 2 with p the separation, so the force on each end is
    lambda * p, equal and opposite.
    """

    def __init__(
        self,
        body1: MobilizedBodyIndex,
        point1: jax.Array,
        body2: MobilizedBodyIndex,
        point2: jax.Array,
        length: float,
    ) -> None:
        super().__init__(1, 0, 0)
        _distinct(body1, body2)
        if length < 0:
            raise ValueError(f"Rod length must be non-negative, got {length}")
        self._b1 = self.add_constrained_body(body1)
        self._b2 = self.add_constrained_body(body2)
        self._point1 = as_vec3(point1, "point1")
        self._point2 = as_vec3(point2, "point2")
        self._length = float(length)

    @property
    def point1(self) -> jax.Array:
        return self._point1

    @point1.setter
    def point1(self, value: jax.Array) -> None:
        self._point1 = as_vec3(value, "point1")
        self.invalidate_topology()

    @property
    def point2(self) -> jax.Array:
        return self._point2

    @point2.setter
    def point2(self, value: jax.Array) -> None:
        self._point2 = as_vec3(value, "point2")
        self.invalidate_topology()

    @property
    def length(self) -> float:
        return self._length

    @length.setter
    def length(self, value: float) -> None:
        if value < 0:
            raise ValueError(f"Rod length must be non-negative, got {value}")
        self._length = float(value)
        self.invalidate_topology()

    def _separation(self, state: State, cache: PositionCache | None = None) -> jax.Array:
        p1 = self.calc_station_location(state, self._b1, self._point1, cache)
        p2 = self.calc_station_location(state, self._b2, self._point2, cache)
        return p2 - p1

    def _relative_velocity(self, state: State, cache: VelocityCache | None = None) -> jax.Array:
        v1 = self.calc_station_velocity(state, self._b1, self._point1, cache)
        v2 = self.calc_station_velocity(state, self._b2, self._point2, cache)
        return v2 - v1

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        p = self._separation(state, cache)
        return _scalar(0.5 * (p @ p - self._length**2))

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        p = self._separation(state)
        v = self._relative_velocity(state, cache)
        return _scalar(v @ p)

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        p = self._separation(state)
        v = self._relative_velocity(state)
        a1 = self.calc_station_acceleration(state, self._b1, self._point1, cache)
        a2 = self.calc_station_acceleration(state, self._b2, self._point2, cache)
        return _scalar((a2 - a1) @ p + v @ v)

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        force = multipliers[0] * self._separation(state)
        body_forces = self.zero_body_forces()
        body_forces = self.add_in_station_force(state, self._b2, self._point2, force, body_forces)
        body_forces = self.add_in_station_force(state, self._b1, self._point1, -force, body_forces)
        return body_forces, self.zero_mobility_forces(state)


# Constraints between a base body B and a follower station S on body F.
# Forces act at S and at the material point C of B coincident with S, so
# p_BC is recomputed from the current configuration on every call.


class _FollowerPointConstraint(Constraint):
    _base: ConstrainedBodyIndex
    _follower: ConstrainedBodyIndex
    _follower_point: jax.Array

    def _register(self, base: MobilizedBodyIndex, follower: MobilizedBodyIndex, follower_point: jax.Array) -> None:
        _distinct(base, follower)
        self._base = self.add_constrained_body(base)
        self._follower = self.add_constrained_body(follower)
        self._follower_point = as_vec3(follower_point, "follower_point")

    @property
    def follower_point(self) -> jax.Array:
        return self._follower_point

    @follower_point.setter
    def follower_point(self, value: jax.Array) -> None:
        self._follower_point = as_vec3(value, "follower_point")
        self.invalidate_topology()

    def _coincident_point(self, state: State, cache: PositionCache | None = None) -> jax.Array:
        """p_BC, measured and expressed in B."""
        X_AB = self.get_body_transform(state, self._base, cache)
        p_AS = self.calc_station_location(state, self._follower, self._follower_point, cache)
        return X_AB.apply_inverse(p_AS)

    def _slip_velocity(self, state: State, cache: VelocityCache | None = None) -> jax.Array:
        """v_AS - v_AC, in A."""
        p_BC = self._coincident_point(state)
        v_AS = self.calc_station_velocity(state, self._follower, self._follower_point, cache)
        v_AC = self.calc_station_velocity(state, self._base, p_BC, cache)
        return v_AS - v_AC

    def _slip_acceleration(self, state: State, cache: AccelerationCache) -> jax.Array:
        """B-frame derivative of the slip velocity, expressed in A: a_AS - a_AC - 2 w_AB x (v_AS - v_AC)."""
        p_BC = self._coincident_point(state)
        w_AB = self.get_body_angular_velocity(state, self._base)
        slip = self._slip_velocity(state)
        a_AS = self.calc_station_acceleration(state, self._follower, self._follower_point, cache)
        a_AC = self.calc_station_acceleration(state, self._base, p_BC, cache)
        return a_AS - a_AC - 2.0 * jnp.cross(w_AB, slip)

    def _apply_contact_force(self, state: State, force_A: jax.Array, body_forces: jax.Array) -> jax.Array:
        """+force_A at S on F, -force_A at C on B."""
        p_BC = self._coincident_point(state)
        body_forces = self.add_in_station_force(state, self._follower, self._follower_point, force_A, body_forces)
        return self.add_in_station_force(state, self._base, p_BC, -force_A, body_forces)


# POINT IN PLANE


class PointInPlane(_FollowerPointConstraint):
    """Follower station S stays in the plane n . p = h fixed on the plane body.

    perr = p_BC . n - h; verr and aerr are its derivatives taken in B.
    """

    def __init__(
        self,
        plane_body: MobilizedBodyIndex,
        normal: jax.Array,
        height: float,
        follower_body: MobilizedBodyIndex,
        follower_point: jax.Array,
    ) -> None:
        super().__init__(1, 0, 0)
        self._register(plane_body, follower_body, follower_point)
        self._normal = as_unit_vec3(normal, "normal")
        self._height = float(height)

    @property
    def normal(self) -> jax.Array:
        return self._normal

    @normal.setter
    def normal(self, value: jax.Array) -> None:
        self._normal = as_unit_vec3(value, "normal")
        self.invalidate_topology()

    @property
    def height(self) -> float:
        return self._height

    @height.setter
    def height(self, value: float) -> None:
        self._height = float(value)
        self.invalidate_topology()

    def _normal_in_ancestor(self, state: State) -> jax.Array:
        return self.get_body_rotation(state, self._base) @ self._normal

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        return _scalar(self._coincident_point(state, cache) @ self._normal - self._height)

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return _scalar(self._slip_velocity(state, cache) @ self._normal_in_ancestor(state))

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return _scalar(self._slip_acceleration(state, cache) @ self._normal_in_ancestor(state))

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        force_A = multipliers[0] * self._normal_in_ancestor(state)
        body_forces = self._apply_contact_force(state, force_A, self.zero_body_forces())
        return body_forces, self.zero_mobility_forces(state)


# POINT ON LINE


class PointOnLine(_FollowerPointConstraint):
    """Follower station S stays on the line through point P along direction z on the line body.

    Two point-in-plane conditions whose planes intersect in the line: normals x
    and y = z x x, derived from z when the topology is realized.
    """

    def __init__(
        self,
        line_body: MobilizedBodyIndex,
        direction: jax.Array,
        point_on_line: jax.Array,
        follower_body: MobilizedBodyIndex,
        follower_point: jax.Array,
    ) -> None:
        super().__init__(2, 0, 0)
        self._register(line_body, follower_body, follower_point)
        self._direction = as_unit_vec3(direction, "direction")
        self._point_on_line = as_vec3(point_on_line, "point_on_line")
        self._x: jax.Array | None = None
        self._y: jax.Array | None = None

    @property
    def direction(self) -> jax.Array:
        return self._direction

    @direction.setter
    def direction(self, value: jax.Array) -> None:
        self._direction = as_unit_vec3(value, "direction")
        self.invalidate_topology()

    @property
    def point_on_line(self) -> jax.Array:
        return self._point_on_line

    @point_on_line.setter
    def point_on_line(self, value: jax.Array) -> None:
        self._point_on_line = as_vec3(value, "point_on_line")
        self.invalidate_topology()

    def calc_topology_cache(self) -> None:
        self._x = perp(self._direction)
        self._y = jnp.cross(self._direction, self._x)

    @property
    def basis(self) -> jax.Array:
        """(2, 3) rows x and y, perpendicular to the line, in the line body's frame."""
        if self._x is None or self._y is None:
            raise StageNotRealizedError("PointOnLine topology is not realized")
        return jnp.stack([self._x, self._y])

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        p_PC = self._coincident_point(state, cache) - self._point_on_line
        return self.basis @ p_PC

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        R_AB = self.get_body_rotation(state, self._base)
        return self.basis @ (R_AB.T @ self._slip_velocity(state, cache))

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        R_AB = self.get_body_rotation(state, self._base)
        return self.basis @ (R_AB.T @ self._slip_acceleration(state, cache))

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        force_B = multipliers @ self.basis
        force_A = self.get_body_rotation(state, self._base) @ force_B
        body_forces = self._apply_contact_force(state, force_A, self.zero_body_forces())
        return body_forces, self.zero_mobility_forces(state)


# ORIENTATION HELPERS
#
# For unit vectors f on F and b on B, all in A:
#   d/dt (f . b)   = (w_AF - w_AB) . (f x b)
#   d2/dt2 (f . b) = (b_AF - b_AB) . (f x b)
#                    + (w_AF - w_AB) . ((w_AF x f) x b - (w_AB x b) x f)


def _angle_dot(f: jax.Array, b: jax.Array, w_F: jax.Array, w_B: jax.Array) -> jax.Array:
    return (w_F - w_B) @ jnp.cross(f, b)


def _angle_dot_dot(
    f: jax.Array,
    b: jax.Array,
    w_F: jax.Array,
    w_B: jax.Array,
    alpha_F: jax.Array,
    alpha_B: jax.Array,
) -> jax.Array:
    return (alpha_F - alpha_B) @ jnp.cross(f, b) + (w_F - w_B) @ (
        jnp.cross(jnp.cross(w_F, f), b) - jnp.cross(jnp.cross(w_B, b), f)
    )


# (axis of F, axis of B) kept perpendicular by the orientation equations.
_AXIS_PAIRS = ((0, 1), (1, 2), (2, 0))


class _OrientationMixin:
    """Three perpendicularity conditions RFx.RBy, RFy.RBz, RFz.RBx between two frames."""

    def _frame_axes(self, state: State, cache: PositionCache | None = None) -> tuple[jax.Array, jax.Array]:
        """(RF, RB) with columns the frame axes expressed in A."""
        RF = self.get_body_rotation(state, self._follower, cache) @ self._rotation_f  # type: ignore[attr-defined]
        RB = self.get_body_rotation(state, self._base, cache) @ self._rotation_b  # type: ignore[attr-defined]
        return RF, RB

    def _orientation_errors(self, state: State, cache: PositionCache) -> jax.Array:
        RF, RB = self._frame_axes(state, cache)
        return jnp.stack([RF[:, i] @ RB[:, j] for i, j in _AXIS_PAIRS])

    def _orientation_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        RF, RB = self._frame_axes(state)
        w_F = self.get_body_angular_velocity(state, self._follower, cache)  # type: ignore[attr-defined]
        w_B = self.get_body_angular_velocity(state, self._base, cache)  # type: ignore[attr-defined]
        return jnp.stack([_angle_dot(RF[:, i], RB[:, j], w_F, w_B) for i, j in _AXIS_PAIRS])

    def _orientation_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        RF, RB = self._frame_axes(state)
        w_F = self.get_body_angular_velocity(state, self._follower)  # type: ignore[attr-defined]
        w_B = self.get_body_angular_velocity(state, self._base)  # type: ignore[attr-defined]
        alpha_F = self.get_body_angular_acceleration(state, self._follower, cache)  # type: ignore[attr-defined]
        alpha_B = self.get_body_angular_acceleration(state, self._base, cache)  # type: ignore[attr-defined]
        return jnp.stack(
            [_angle_dot_dot(RF[:, i], RB[:, j], w_F, w_B, alpha_F, alpha_B) for i, j in _AXIS_PAIRS]
        )

    def _orientation_torque(self, state: State, multipliers: jax.Array) -> jax.Array:
        """Torque on F in A; B gets its negative."""
        RF, RB = self._frame_axes(state)
        axes = jnp.stack([jnp.cross(RF[:, i], RB[:, j]) for i, j in _AXIS_PAIRS])
        return multipliers @ axes


# CONSTANT ANGLE


class ConstantAngle(Constraint):
    """Keeps the angle between axis b on the base body and axis f on the follower body fixed.

    perr = b . f - cos(angle). Singular as the angle approaches 0 or 180 degrees,
    where one equation can no longer hold the axes.
    """

    def __init__(
        self,
        base_body: MobilizedBodyIndex,
        base_axis: jax.Array,
        follower_body: MobilizedBodyIndex,
        follower_axis: jax.Array,
        angle: float = jnp.pi / 2,
    ) -> None:
        super().__init__(1, 0, 0)
        _distinct(base_body, follower_body)
        self._base = self.add_constrained_body(base_body)
        self._follower = self.add_constrained_body(follower_body)
        self._base_axis = as_unit_vec3(base_axis, "base_axis")
        self._follower_axis = as_unit_vec3(follower_axis, "follower_axis")
        self._angle = float(angle)
        self._cos_angle: float | None = None

    @property
    def base_axis(self) -> jax.Array:
        return self._base_axis

    @base_axis.setter
    def base_axis(self, value: jax.Array) -> None:
        self._base_axis = as_unit_vec3(value, "base_axis")
        self.invalidate_topology()

    @property
    def follower_axis(self) -> jax.Array:
        return self._follower_axis

    @follower_axis.setter
    def follower_axis(self, value: jax.Array) -> None:
        self._follower_axis = as_unit_vec3(value, "follower_axis")
        self.invalidate_topology()

    @property
    def angle(self) -> float:
        return self._angle

    @angle.setter
    def angle(self, value: float) -> None:
        self._angle = float(value)
        self.invalidate_topology()

    def calc_topology_cache(self) -> None:
        self._cos_angle = float(jnp.cos(self._angle))

    def _axes(self, state: State, cache: PositionCache | None = None) -> tuple[jax.Array, jax.Array]:
        """(f_A, b_A)."""
        f_A = self.get_body_rotation(state, self._follower, cache) @ self._follower_axis
        b_A = self.get_body_rotation(state, self._base, cache) @ self._base_axis
        return f_A, b_A

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        f_A, b_A = self._axes(state, cache)
        return _scalar(b_A @ f_A - self._cos_angle)

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        f_A, b_A = self._axes(state)
        w_F = self.get_body_angular_velocity(state, self._follower, cache)
        w_B = self.get_body_angular_velocity(state, self._base, cache)
        return _scalar(_angle_dot(f_A, b_A, w_F, w_B))

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        f_A, b_A = self._axes(state)
        w_F = self.get_body_angular_velocity(state, self._follower)
        w_B = self.get_body_angular_velocity(state, self._base)
        alpha_F = self.get_body_angular_acceleration(state, self._follower, cache)
        alpha_B = self.get_body_angular_acceleration(state, self._base, cache)
        return _scalar(_angle_dot_dot(f_A, b_A, w_F, w_B, alpha_F, alpha_B))

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        f_A, b_A = self._axes(state)
        torque = multipliers[0] * jnp.cross(f_A, b_A)
        body_forces = self.zero_body_forces()
        body_forces = self.add_in_body_torque(state, self._follower, torque, body_forces)
        body_forces = self.add_in_body_torque(state, self._base, -torque, body_forces)
        return body_forces, self.zero_mobility_forces(state)


# BALL


class Ball(_FollowerPointConstraint):
    """Spherical joint: point2 on body2 coincides with point1 on body1.

    perr = p_AS - p_AP, in A. Its rates are derivatives taken in body1's frame
    and expressed in A, so R_AB^T perr differentiates to R_AB^T verr. The
    multipliers are the A-frame force on point2.
    """

    def __init__(
        self,
        body1: MobilizedBodyIndex,
        point1: jax.Array,
        body2: MobilizedBodyIndex,
        point2: jax.Array,
    ) -> None:
        super().__init__(3, 0, 0)
        self._register(body1, body2, point2)
        self._point1 = as_vec3(point1, "point1")

    @property
    def point1(self) -> jax.Array:
        return self._point1

    @point1.setter
    def point1(self, value: jax.Array) -> None:
        self._point1 = as_vec3(value, "point1")
        self.invalidate_topology()

    @property
    def point2(self) -> jax.Array:
        return self.follower_point

    @point2.setter
    def point2(self, value: jax.Array) -> None:
        self.follower_point = value

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        p_AP = self.calc_station_location(state, self._base, self._point1, cache)
        p_AS = self.calc_station_location(state, self._follower, self._follower_point, cache)
        return p_AS - p_AP

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return self._slip_velocity(state, cache)

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return self._slip_acceleration(state, cache)

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        body_forces = self._apply_contact_force(state, multipliers, self.zero_body_forces())
        return body_forces, self.zero_mobility_forces(state)


# CONSTANT ORIENTATION


class ConstantOrientation(_OrientationMixin, Constraint):
    """Keeps frame RF on the follower body aligned with frame RB on the base body.

    Only three perpendicularity conditions are enforced, which also hold when
    some axes are antiparallel, so it cannot assemble from an arbitrary start.
    """

    def __init__(
        self,
        base_body: MobilizedBodyIndex,
        rotation_b: jax.Array,
        follower_body: MobilizedBodyIndex,
        rotation_f: jax.Array,
    ) -> None:
        super().__init__(3, 0, 0)
        _distinct(base_body, follower_body)
        self._base = self.add_constrained_body(base_body)
        self._follower = self.add_constrained_body(follower_body)
        self._rotation_b = as_rotation(rotation_b, "rotation_b")
        self._rotation_f = as_rotation(rotation_f, "rotation_f")

    @property
    def rotation_b(self) -> jax.Array:
        return self._rotation_b

    @rotation_b.setter
    def rotation_b(self, value: jax.Array) -> None:
        self._rotation_b = as_rotation(value, "rotation_b")
        self.invalidate_topology()

    @property
    def rotation_f(self) -> jax.Array:
        return self._rotation_f

    @rotation_f.setter
    def rotation_f(self, value: jax.Array) -> None:
        self._rotation_f = as_rotation(value, "rotation_f")
        self.invalidate_topology()

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        return self._orientation_errors(state, cache)

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return self._orientation_dot_errors(state, cache)

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return self._orientation_dot_dot_errors(state, cache)

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        torque = self._orientation_torque(state, multipliers)
        body_forces = self.zero_body_forces()
        body_forces = self.add_in_body_torque(state, self._follower, torque, body_forces)
        body_forces = self.add_in_body_torque(state, self._base, -torque, body_forces)
        return body_forces, self.zero_mobility_forces(state)


# WELD


class Weld(_OrientationMixin, _FollowerPointConstraint):
    """Welds frame F on the follower body to frame B on the base body.

    Equations 0-2 are the ConstantOrientation block, 3-5 a Ball block between
    the two frame origins. Shares ConstantOrientation's assembly limitation.
    """

    def __init__(
        self,
        base_body: MobilizedBodyIndex,
        frame_b: Transform,
        follower_body: MobilizedBodyIndex,
        frame_f: Transform,
    ) -> None:
        super().__init__(6, 0, 0)
        frame_b = Transform(as_rotation(frame_b.R, "frame_b.R"), as_vec3(frame_b.p, "frame_b.p"))
        frame_f = Transform(as_rotation(frame_f.R, "frame_f.R"), as_vec3(frame_f.p, "frame_f.p"))
        self._register(base_body, follower_body, frame_f.p)
        self._frame_b = frame_b
        self._frame_f = frame_f

    # The orientation helpers read these two.
    @property
    def _rotation_b(self) -> jax.Array:
        return self._frame_b.R

    @property
    def _rotation_f(self) -> jax.Array:
        return self._frame_f.R

    @property
    def frame_b(self) -> Transform:
        return self._frame_b

    @frame_b.setter
    def frame_b(self, value: Transform) -> None:
        self._frame_b = Transform(as_rotation(value.R, "frame_b.R"), as_vec3(value.p, "frame_b.p"))
        self.invalidate_topology()

    @property
    def frame_f(self) -> Transform:
        return self._frame_f

    @frame_f.setter
    def frame_f(self, value: Transform) -> None:
        self._frame_f = Transform(as_rotation(value.R, "frame_f.R"), as_vec3(value.p, "frame_f.p"))
        self._follower_point = self._frame_f.p
        self.invalidate_topology()

    # The follower point is frame_f.p; setting it moves frame F.
    @property
    def follower_point(self) -> jax.Array:
        return self._follower_point

    @follower_point.setter
    def follower_point(self, value: jax.Array) -> None:
        self.frame_f = Transform(self._frame_f.R, value)

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        p_AB1 = self.calc_station_location(state, self._base, self._frame_b.p, cache)
        p_AF2 = self.calc_station_location(state, self._follower, self._follower_point, cache)
        return jnp.concatenate([self._orientation_errors(state, cache), p_AF2 - p_AB1])

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return jnp.concatenate([self._orientation_dot_errors(state, cache), self._slip_velocity(state, cache)])

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return jnp.concatenate(
            [self._orientation_dot_dot_errors(state, cache), self._slip_acceleration(state, cache)]
        )

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        torque = self._orientation_torque(state, multipliers[:3])
        body_forces = self.zero_body_forces()
        body_forces = self.add_in_body_torque(state, self._follower, torque, body_forces)
        body_forces = self.add_in_body_torque(state, self._base, -torque, body_forces)
        body_forces = self._apply_contact_force(state, multipliers[3:], body_forces)
        return body_forces, self.zero_mobility_forces(state)


# NO SLIP 1D


class NoSlip1D(Constraint):
    """
    Rolling without slip along one direction. The contact point P and direction
    n are fixed on the case body; the material points P0 of body0 and P1 of
    body1 currently at P have equal velocity components along n.

    verr = (v_AP1 - v_AP0) . n_A. Since P0 and P1 are re-selected as P moves,
    vaerr carries the terms from that migration as well:
      vaerr = (a_AP1 - a_AP0 + w_AB1 x (v_AP - v_AP1) - w_AB0 x (v_AP - v_AP0)
               - w_AC x (v_AP1 - v_AP0)) . n_A
    with v_AP the velocity of P as a station of the case body.
    """

    def __init__(
        self,
        case_body: MobilizedBodyIndex,
        contact_point: jax.Array,
        direction: jax.Array,
        body0: MobilizedBodyIndex,
        body1: MobilizedBodyIndex,
    ) -> None:
        super().__init__(0, 1, 0)
        _distinct(body0, body1)
        self._case = self.add_constrained_body(case_body)
        self._body0 = self.add_constrained_body(body0)
        self._body1 = self.add_constrained_body(body1)
        self._contact_point = as_vec3(contact_point, "contact_point")
        self._direction = as_unit_vec3(direction, "direction")

    @property
    def contact_point(self) -> jax.Array:
        return self._contact_point

    @contact_point.setter
    def contact_point(self, value: jax.Array) -> None:
        self._contact_point = as_vec3(value, "contact_point")
        self.invalidate_topology()

    @property
    def direction(self) -> jax.Array:
        return self._direction

    @direction.setter
    def direction(self, value: jax.Array) -> None:
        self._direction = as_unit_vec3(value, "direction")
        self.invalidate_topology()

    def _contact_stations(self, state: State) -> tuple[jax.Array, jax.Array]:
        """Stations of P in body0 and body1."""
        p_AP = self.calc_station_location(state, self._case, self._contact_point)
        p_P0 = self.get_body_transform(state, self._body0).apply_inverse(p_AP)
        p_P1 = self.get_body_transform(state, self._body1).apply_inverse(p_AP)
        return p_P0, p_P1

    def _direction_in_ancestor(self, state: State) -> jax.Array:
        return self.get_body_rotation(state, self._case) @ self._direction

    def _contact_velocities(
        self, state: State, cache: VelocityCache | None = None
    ) -> tuple[jax.Array, jax.Array]:
        p_P0, p_P1 = self._contact_stations(state)
        v_AP0 = self.calc_station_velocity(state, self._body0, p_P0, cache)
        v_AP1 = self.calc_station_velocity(state, self._body1, p_P1, cache)
        return v_AP0, v_AP1

    def calc_velocity_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        v_AP0, v_AP1 = self._contact_velocities(state, cache)
        return _scalar((v_AP1 - v_AP0) @ self._direction_in_ancestor(state))

    def calc_velocity_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        p_P0, p_P1 = self._contact_stations(state)
        v_AP0, v_AP1 = self._contact_velocities(state)
        v_AP = self.calc_station_velocity(state, self._case, self._contact_point)
        w_AC = self.get_body_angular_velocity(state, self._case)
        w_AB0 = self.get_body_angular_velocity(state, self._body0)
        w_AB1 = self.get_body_angular_velocity(state, self._body1)
        a_AP0 = self.calc_station_acceleration(state, self._body0, p_P0, cache)
        a_AP1 = self.calc_station_acceleration(state, self._body1, p_P1, cache)
        rate = (
            a_AP1
            - a_AP0
            + jnp.cross(w_AB1, v_AP - v_AP1)
            - jnp.cross(w_AB0, v_AP - v_AP0)
            - jnp.cross(w_AC, v_AP1 - v_AP0)
        )
        return _scalar(rate @ self._direction_in_ancestor(state))

    def apply_velocity_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        p_P0, p_P1 = self._contact_stations(state)
        force_A = multipliers[0] * self._direction_in_ancestor(state)
        body_forces = self.zero_body_forces()
        body_forces = self.add_in_station_force(state, self._body1, p_P1, force_A, body_forces)
        body_forces = self.add_in_station_force(state, self._body0, p_P0, -force_A, body_forces)
        return body_forces, self.zero_mobility_forces(state)


# CONSTANT SPEED


class ConstantSpeed(Constraint):
    """Prescribes one generalized speed of a mobilizer: verr = u - speed, vaerr = udot."""

    def __init__(
        self,
        mobilizer: MobilizedBodyIndex,
        speed: float,
        which_u: int = 0,
    ) -> None:
        super().__init__(0, 1, 0)
        if which_u < 0:
            raise ValueError(f"which_u must be non-negative, got {which_u}")
        self._mobilizer = self.add_constrained_mobilizer(mobilizer)
        self._which = MobilizerUIndex(which_u)
        self._speed = float(speed)

    @property
    def speed(self) -> float:
        return self._speed

    @speed.setter
    def speed(self, value: float) -> None:
        self._speed = float(value)
        self.invalidate_topology()

    @property
    def which_u(self) -> MobilizerUIndex:
        return self._which

    def calc_velocity_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return _scalar(self.get_one_u(state, self._mobilizer, self._which) - self._speed)

    def calc_velocity_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return _scalar(self.get_one_udot(state, self._mobilizer, self._which))

    def apply_velocity_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        mobility_forces = self.add_in_one_mobility_force(
            state, self._mobilizer, self._which, multipliers[0], self.zero_mobility_forces(state)
        )
        return self.zero_body_forces(), mobility_forces


# CONFIGS


@dataclass
class RodConfig(ConstraintConfig):
    body1: int | str = 0
    body2: int | str = 1
    point1: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    point2: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    length: float = 1.0

    def build_constraint(self, matter: "MatterSubsystem") -> Rod:
        return Rod(
            matter.body_index(self.body1),
            jnp.asarray(self.point1),
            matter.body_index(self.body2),
            jnp.asarray(self.point2),
            self.length,
        )


@dataclass
class PointInPlaneConfig(ConstraintConfig):
    plane_body: int | str = 0
    follower_body: int | str = 1
    normal: list[float] = field(default_factory=lambda: [0.0, 0.0, 1.0])
    height: float = 0.0
    follower_point: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])

    def build_constraint(self, matter: "MatterSubsystem") -> PointInPlane:
        return PointInPlane(
            matter.body_index(self.plane_body),
            jnp.asarray(self.normal),
            self.height,
            matter.body_index(self.follower_body),
            jnp.asarray(self.follower_point),
        )


@dataclass
class PointOnLineConfig(ConstraintConfig):
    line_body: int | str = 0
    follower_body: int | str = 1
    direction: list[float] = field(default_factory=lambda: [0.0, 0.0, 1.0])
    point_on_line: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    follower_point: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])

    def build_constraint(self, matter: "MatterSubsystem") -> PointOnLine:
        return PointOnLine(
            matter.body_index(self.line_body),
            jnp.asarray(self.direction),
            jnp.asarray(self.point_on_line),
            matter.body_index(self.follower_body),
            jnp.asarray(self.follower_point),
        )


@dataclass
class ConstantAngleConfig(ConstraintConfig):
    base_body: int | str = 0
    follower_body: int | str = 1
    base_axis: list[float] = field(default_factory=lambda: [1.0, 0.0, 0.0])
    follower_axis: list[float] = field(default_factory=lambda: [0.0, 1.0, 0.0])
    angle: float = float(jnp.pi / 2)

    def build_constraint(self, matter: "MatterSubsystem") -> ConstantAngle:
        return ConstantAngle(
            matter.body_index(self.base_body),
            jnp.asarray(self.base_axis),
            matter.body_index(self.follower_body),
            jnp.asarray(self.follower_axis),
            self.angle,
        )


@dataclass
class BallConfig(ConstraintConfig):
    body1: int | str = 0
    body2: int | str = 1
    point1: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    point2: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])

    def build_constraint(self, matter: "MatterSubsystem") -> Ball:
        return Ball(
            matter.body_index(self.body1),
            jnp.asarray(self.point1),
            matter.body_index(self.body2),
            jnp.asarray(self.point2),
        )


@dataclass
class ConstantOrientationConfig(ConstraintConfig):
    base_body: int | str = 0
    follower_body: int | str = 1
    rotation_b: list[list[float]] = field(default_factory=lambda: jnp.eye(3).tolist())
    rotation_f: list[list[float]] = field(default_factory=lambda: jnp.eye(3).tolist())

    def build_constraint(self, matter: "MatterSubsystem") -> ConstantOrientation:
        return ConstantOrientation(
            matter.body_index(self.base_body),
            jnp.asarray(self.rotation_b),
            matter.body_index(self.follower_body),
            jnp.asarray(self.rotation_f),
        )


@dataclass
class WeldConfig(ConstraintConfig):
    base_body: int | str = 0
    follower_body: int | str = 1
    rotation_b: list[list[float]] = field(default_factory=lambda: jnp.eye(3).tolist())
    origin_b: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    rotation_f: list[list[float]] = field(default_factory=lambda: jnp.eye(3).tolist())
    origin_f: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])

    def build_constraint(self, matter: "MatterSubsystem") -> Weld:
        return Weld(
            matter.body_index(self.base_body),
            Transform(jnp.asarray(self.rotation_b), jnp.asarray(self.origin_b)),
            matter.body_index(self.follower_body),
            Transform(jnp.asarray(self.rotation_f), jnp.asarray(self.origin_f)),
        )


@dataclass
class NoSlip1DConfig(ConstraintConfig):
    case_body: int | str = 0
    body0: int | str = 1
    body1: int | str = 2
    contact_point: list[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    direction: list[float] = field(default_factory=lambda: [1.0, 0.0, 0.0])

    def build_constraint(self, matter: "MatterSubsystem") -> NoSlip1D:
        return NoSlip1D(
            matter.body_index(self.case_body),
            jnp.asarray(self.contact_point),
            jnp.asarray(self.direction),
            matter.body_index(self.body0),
            matter.body_index(self.body1),
        )


@dataclass
class ConstantSpeedConfig(ConstraintConfig):
    mobilizer: int | str = 1
    speed: float = 0.0
    which_u: int = 0

    def build_constraint(self, matter: "MatterSubsystem") -> ConstantSpeed:
        return ConstantSpeed(matter.body_index(self.mobilizer), self.speed, self.which_u)
