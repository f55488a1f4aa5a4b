"""Frames, spatial vectors and re-measuring kinematics in a moving ancestor frame.

Naming follows the usual multibody convention: `X_AB` is the pose of frame B
measured from and expressed in frame A, `R_AB` its rotation, `p_AB` the
location of B's origin, `w_AB`/`v_AB` angular and linear velocity and
`b_AB`/`a_AB` the corresponding accelerations.
"""

from typing import NamedTuple

import jax
import jax.numpy as jnp
import numpy as np

from .utils import skew


class Transform(NamedTuple):
    """Pose of a frame: rotation matrix R (3, 3) and origin p (3,)."""

    R: jax.Array
    p: jax.Array

    @classmethod
    def identity(cls) -> "Transform":
        return cls(jnp.eye(3), jnp.zeros(3))

    def apply(self, station: jax.Array) -> jax.Array:
        """Re-measure and re-express a station given in the inner frame (X * p)."""
        return self.R @ station + self.p

    def apply_inverse(self, point: jax.Array) -> jax.Array:
        """Shift a point to this frame's origin and re-express it there (~X * p)."""
        return self.R.T @ (point - self.p)

    def compose(self, other: "Transform") -> "Transform":
        return Transform(self.R @ other.R, self.R @ other.p + self.p)

    def inverse(self) -> "Transform":
        return Transform(self.R.T, -(self.R.T @ self.p))


class SpatialVec(NamedTuple):
    """Angular and linear parts of a spatial velocity, acceleration or force."""

    angular: jax.Array
    linear: jax.Array

    @classmethod
    def zero(cls) -> "SpatialVec":
        return cls(jnp.zeros(3), jnp.zeros(3))


def as_vec3(v, name: str = "vector") -> jax.Array:
    arr = jnp.asarray(v, dtype=float)
    if arr.shape != (3,):
        raise ValueError(f"{name} must have shape (3,), got {arr.shape}")
    return arr


def as_unit_vec3(v, name: str = "direction") -> jax.Array:
    """Normalize `v`; zero-length input is rejected."""
    arr = as_vec3(v, name)
    norm = float(np.linalg.norm(np.asarray(arr)))
    if norm == 0.0:
        raise ValueError(f"{name} must be nonzero")
    return arr / norm


def as_rotation(R, name: str = "rotation") -> jax.Array:
    arr = jnp.asarray(R, dtype=float)
    if arr.shape != (3, 3):
        raise ValueError(f"{name} must have shape (3, 3), got {arr.shape}")
    if not np.allclose(np.asarray(arr.T @ arr), np.eye(3), atol=1e-8):
        raise ValueError(f"{name} must be orthonormal")
    return arr


def perp(u: jax.Array) -> jax.Array:
    """An arbitrary unit vector perpendicular to unit vector `u`.

    Crosses `u` with the coordinate axis it is least aligned with, which keeps
    the result well conditioned.
    """
    k = int(np.argmin(np.abs(np.asarray(u))))
    x = jnp.cross(u, jnp.eye(3)[k])
    return x / jnp.linalg.norm(x)


def axis_angle_to_rotation(axis: jax.Array, angle: jax.Array) -> jax.Array:
    """Rodrigues' formula for a rotation by `angle` about unit vector `axis`."""
    k = skew(axis)
    return jnp.eye(3) + jnp.sin(angle) * k + (1.0 - jnp.cos(angle)) * (k @ k)


def relative_transform(X_GA: Transform, X_GB: Transform) -> Transform:
    """X_AB from two ground-frame poses."""
    R_AG = X_GA.R.T
    return Transform(R_AG @ X_GB.R, R_AG @ (X_GB.p - X_GA.p))


def relative_velocity(
    X_GA: Transform,
    V_GA: SpatialVec,
    X_GB: Transform,
    V_GB: SpatialVec,
) -> SpatialVec:
    """V_AB: velocity of B's origin taken in A and expressed in A."""
    R_AG = X_GA.R.T
    w_GA = V_GA.angular
    r = X_GB.p - X_GA.p
    r_dot = V_GB.linear - V_GA.linear
    w_AB = R_AG @ (V_GB.angular - w_GA)
    v_AB = R_AG @ (r_dot - jnp.cross(w_GA, r))
    return SpatialVec(w_AB, v_AB)


def relative_acceleration(
    X_GA: Transform,
    V_GA: SpatialVec,
    A_GA: SpatialVec,
    X_GB: Transform,
    V_GB: SpatialVec,
    A_GB: SpatialVec,
) -> SpatialVec:
    """A_AB: second derivative in A of B's pose, expressed in A."""
    R_AG = X_GA.R.T
    w_GA, b_GA = V_GA.angular, A_GA.angular
    r = X_GB.p - X_GA.p
    r_dot = V_GB.linear - V_GA.linear
    r_ddot = A_GB.linear - A_GA.linear
    w_rel = V_GB.angular - w_GA

    b_AB = R_AG @ (A_GB.angular - b_GA - jnp.cross(w_GA, w_rel))
    a_AB = R_AG @ (
        r_ddot
        - jnp.cross(b_GA, r)
        - 2.0 * jnp.cross(w_GA, r_dot)
        + jnp.cross(w_GA, jnp.cross(w_GA, r))  # not associative
    )
    return SpatialVec(b_AB, a_AB)
