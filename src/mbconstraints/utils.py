from typing import Sequence

import jax
import jax.numpy as jnp
import mujoco
from mujoco import mjx
from mujoco.mjx._src import support as mjx_support


def skew(v: jax.Array) -> jax.Array:
    """Skew-symmetric matrix (3,3) with skew(a) @ b == cross(a, b)."""
    return jnp.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ],
    )


def quat_mult(q0: jax.Array, q1: jax.Array) -> jax.Array:
    """Quaternion product (w, x, y, z)."""
    w0, x0, y0, z0 = q0[0], q0[1], q0[2], q0[3]
    w1, x1, y1, z1 = q1[0], q1[1], q1[2], q1[3]
    return jnp.array(
        [
            w0 * w1 - x0 * x1 - y0 * y1 - z0 * z1,
            w0 * x1 + x0 * w1 + y0 * z1 - z0 * y1,
            w0 * y1 - x0 * z1 + y0 * w1 + z0 * x1,
            w0 * z1 + x0 * y1 - y0 * x1 + z0 * w1,
        ],
    )


def quat_deriv(quat: jax.Array, omega: jax.Array) -> jax.Array:
    """d(quat)/dt = 0.5 * quat * [0, omega] for body-frame angular velocity omega."""
    return 0.5 * quat_mult(quat, jnp.concatenate([jnp.zeros(1), omega]))


def quat_to_rotation(quat: jax.Array) -> jax.Array:
    """Rotation matrix of a (w, x, y, z) quaternion. The quaternion is normalized first."""
    w, x, y, z = quat / jnp.linalg.norm(quat)
    return jnp.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ],
    )


JNT_FREE = int(mujoco.mjtJoint.mjJNT_FREE)
JNT_BALL = int(mujoco.mjtJoint.mjJNT_BALL)
JNT_SLIDE = int(mujoco.mjtJoint.mjJNT_SLIDE)
JNT_HINGE = int(mujoco.mjtJoint.mjJNT_HINGE)

JOINT_NQ = {JNT_FREE: 7, JNT_BALL: 4, JNT_SLIDE: 1, JNT_HINGE: 1}
JOINT_NV = {JNT_FREE: 6, JNT_BALL: 3, JNT_SLIDE: 1, JNT_HINGE: 1}


def qvel_to_qpos_deriv(model: mjx.Model, q: jax.Array, v: jax.Array) -> jax.Array:
    """dq/dt from (q, v), joint by joint according to model.jnt_type.

    Free joints carry world-frame linear and body-frame angular velocity, ball
    joints body-frame angular velocity; both map through quat_deriv.
    """

    def free_qdot(dq: jax.Array, qadr: jax.Array, dofadr: jax.Array) -> jax.Array:
        seg = jnp.concatenate(
            [
                jax.lax.dynamic_slice(v, (dofadr,), (3,)),
                quat_deriv(
                    jax.lax.dynamic_slice(q, (qadr + 3,), (4,)),
                    jax.lax.dynamic_slice(v, (dofadr + 3,), (3,)),
                ),
            ]
        )
        return jax.lax.dynamic_update_slice(dq, seg, (qadr,))

    def ball_qdot(dq: jax.Array, qadr: jax.Array, dofadr: jax.Array) -> jax.Array:
        seg = quat_deriv(
            jax.lax.dynamic_slice(q, (qadr,), (4,)),
            jax.lax.dynamic_slice(v, (dofadr,), (3,)),
        )
        return jax.lax.dynamic_update_slice(dq, seg, (qadr,))

    def scalar_qdot(dq: jax.Array, qadr: jax.Array, dofadr: jax.Array) -> jax.Array:
        return jax.lax.dynamic_update_slice(
            dq, jax.lax.dynamic_slice(v, (dofadr,), (1,)), (qadr,)
        )

    # Branch order follows mjtJoint: free, ball, slide, hinge.
    branches = [free_qdot, ball_qdot, scalar_qdot, scalar_qdot]

    def joint(i: int, dq: jax.Array) -> jax.Array:
        jnt_type = jnp.asarray(model.jnt_type)[i]
        qadr = jnp.asarray(model.jnt_qposadr)[i]
        dofadr = jnp.asarray(model.jnt_dofadr)[i]
        return jax.lax.switch(jnt_type, branches, dq, qadr, dofadr)

    return jax.lax.fori_loop(0, model.njnt, joint, jnp.zeros(model.nq, dtype=v.dtype))


def body_origin_jacobians(
    model: mjx.Model, data: mjx.Data, body_id: int
) -> tuple[jax.Array, jax.Array]:
    """Translational and rotational Jacobians (3, nv) of a body origin. Needs a forwarded `data`."""
    jacp, jacr = mjx_support.jac(model, data, data.xpos[body_id], jnp.int32(body_id))
    return jacp.T, jacr.T


def stacked_body_jacobians(
    model: mjx.Model, data: mjx.Data, body_ids: Sequence[int]
) -> tuple[jax.Array, jax.Array]:
    """body_origin_jacobians of several bodies, stacked to (len(body_ids), 3, nv)."""
    jacs = [body_origin_jacobians(model, data, b) for b in body_ids]
    return jnp.stack([j[0] for j in jacs]), jnp.stack([j[1] for j in jacs])


def body_jacobian_time_derivative(
    model: mjx.Model,
    data: mjx.Data,
    body_ids: Sequence[int],
    q: jax.Array,
    v: jax.Array,
) -> tuple[jax.Array, jax.Array]:
    """
    Time derivative of body-origin Jacobians: dJ/dt = (dJ/dq) @ dq_dt.
    Returns (dJ_pos_dt, dJ_rot_dt) each (len(body_ids), 3, nv).
    a_origin = J_pos @ qacc + dJ_pos_dt @ v.
    """
    dq_dt = qvel_to_qpos_deriv(model, q, v)

    def jacobians(q_arg: jax.Array) -> tuple[jax.Array, jax.Array]:
        d = mjx.forward(model, data.replace(qpos=q_arg, qvel=v))
        return stacked_body_jacobians(model, d, body_ids)

    djac_pos_dq, djac_rot_dq = jax.jacfwd(jacobians)(q)
    djac_pos_dt = jnp.einsum("bijn,n->bij", djac_pos_dq, dq_dt)
    djac_rot_dt = jnp.einsum("bijn,n->bij", djac_rot_dq, dq_dt)
    return djac_pos_dt, djac_rot_dt
