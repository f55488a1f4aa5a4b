import logging
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import jax
import jax.numpy as jnp
import mujoco
from mujoco import mjx

from .force_conversion import GeneralizedForceConverter
from .indices import GROUND, MobilizedBodyIndex
from .matter import MatterSubsystem
from .state import (
    AccelerationCache,
    ModelCache,
    PositionCache,
    State,
    VelocityCache,
)
from .utils import (
    JOINT_NQ,
    body_jacobian_time_derivative,
    qvel_to_qpos_deriv,
    stacked_body_jacobians,
)

logger = logging.getLogger(__name__)


@dataclass
class MjxMatterConfig:
    """Exactly one of `xml` (MJCF text) and `xml_path` must be set."""

    xml: str | None = None
    xml_path: str | None = None

    def build_matter(self, device: jax.Device | None = None) -> "MjxMatter":
        return MjxMatter(self, device=device)


class MjxMatter(MatterSubsystem):
    """Matter backed by a MuJoCo model evaluated with MJX.

    MuJoCo bodies are the mobilized bodies, the world body is ground, and a
    body's joints together form its mobilizer. Angular velocities come from
    the rotational Jacobian, so free and ball joints keep MuJoCo's body-frame
    angular velocity convention.
    """

    def __init__(self, cfg: MjxMatterConfig, device: jax.Device | None = None) -> None:
        if (cfg.xml is None) == (cfg.xml_path is None):
            raise ValueError("Set exactly one of xml and xml_path")
        if cfg.xml is not None:
            model = mujoco.MjModel.from_xml_string(cfg.xml)
        else:
            model = mujoco.MjModel.from_xml_path(Path(cfg.xml_path).as_posix())
        data = mujoco.MjData(model)
        mujoco.mj_forward(model, data)

        self._device = cast(jax.Device, device or jax.devices()[0])
        self._model_cpu = model
        self._model = mjx.put_model(model, device=self._device)
        self._data = mjx.put_data(model, data, device=self._device)
        # Ground never moves, so its Jacobians are zero and never evaluated.
        self._moving_bodies = tuple(range(1, model.nbody))
        logger.info(
            "Loaded MuJoCo model: %d bodies, %d joints, nq=%d, nv=%d",
            model.nbody,
            model.njnt,
            model.nq,
            model.nv,
        )

        self._poses_fn = jax.jit(self._poses)
        self._velocities_fn = jax.jit(self._velocities)
        self._accelerations_fn = jax.jit(self._accelerations)
        self._jacobians_fn = jax.jit(self._jacobians)

    @property
    def device(self) -> jax.Device:
        return self._device

    @property
    def model(self) -> mjx.Model:
        return self._model

    @property
    def num_bodies(self) -> int:
        return self._model_cpu.nbody

    @property
    def nq(self) -> int:
        return self._model_cpu.nq

    @property
    def nu(self) -> int:
        return self._model_cpu.nv

    def parent(self, body: MobilizedBodyIndex) -> MobilizedBodyIndex:
        if body == GROUND:
            raise ValueError("Ground has no parent")
        return MobilizedBodyIndex(int(self._model_cpu.body_parentid[body]))

    def find_body_by_name(self, name: str) -> MobilizedBodyIndex:
        body_id = mujoco.mj_name2id(self._model_cpu, mujoco.mjtObj.mjOBJ_BODY, name)
        if body_id == -1:
            raise ValueError(f"Body '{name}' not found")
        return MobilizedBodyIndex(body_id)

    def default_q(self) -> jax.Array:
        return jnp.asarray(self._model_cpu.qpos0)

    def realize_model(self) -> ModelCache:
        m = self._model_cpu
        q_start, nq, u_start, nu = [], [], [], []
        for b in range(m.nbody):
            jntadr, jntnum = int(m.body_jntadr[b]), int(m.body_jntnum[b])
            joints = range(jntadr, jntadr + jntnum)
            q_start.append(int(m.jnt_qposadr[jntadr]) if jntnum else 0)
            nq.append(sum(JOINT_NQ[int(m.jnt_type[j])] for j in joints))
            u_start.append(int(m.body_dofadr[b]) if m.body_dofnum[b] else 0)
            nu.append(int(m.body_dofnum[b]))
        return ModelCache(tuple(q_start), tuple(nq), tuple(u_start), tuple(nu))

    def _forward(self, q: jax.Array, u: jax.Array) -> mjx.Data:
        return mjx.forward(self._model, self._data.replace(qpos=q, qvel=u))

    def _with_ground(self, moving: jax.Array) -> jax.Array:
        return jnp.concatenate([jnp.zeros((1,) + moving.shape[1:], dtype=moving.dtype), moving])

    def _jacobians(self, q: jax.Array) -> tuple[jax.Array, jax.Array]:
        d = self._forward(q, jnp.zeros(self.nu, dtype=q.dtype))
        jacp, jacr = stacked_body_jacobians(self._model, d, self._moving_bodies)
        return self._with_ground(jacp), self._with_ground(jacr)

    def _poses(self, q: jax.Array) -> tuple[jax.Array, jax.Array]:
        d = self._forward(q, jnp.zeros(self.nu, dtype=q.dtype))
        return d.xmat.reshape(-1, 3, 3), d.xpos

    def _velocities(self, q: jax.Array, u: jax.Array) -> tuple[jax.Array, jax.Array]:
        jacp, jacr = self._jacobians(q)
        return jacr @ u, jacp @ u

    def _accelerations(self, q: jax.Array, u: jax.Array, udot: jax.Array) -> tuple[jax.Array, jax.Array]:
        jacp, jacr = self._jacobians(q)
        d = self._forward(q, u)
        djac_pos_dt, djac_rot_dt = body_jacobian_time_derivative(
            self._model, d, self._moving_bodies, q, u
        )
        b = jacr @ udot + self._with_ground(djac_rot_dt @ u)
        a = jacp @ udot + self._with_ground(djac_pos_dt @ u)
        return b, a

    def realize_position(self, state: State) -> PositionCache:
        return PositionCache(*self._poses_fn(state.q))

    def realize_velocity(self, state: State) -> VelocityCache:
        return VelocityCache(*self._velocities_fn(state.q, state.u))

    def realize_acceleration(self, state: State) -> AccelerationCache:
        return AccelerationCache(*self._accelerations_fn(state.q, state.u, state.udot))

    def calc_qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        return qvel_to_qpos_deriv(self._model, q, u)

    def calc_generalized_forces(self, state: State, body_forces: jax.Array, mobility_forces: jax.Array) -> jax.Array:
        """J^T applied to forces at body origins, plus the mobility forces."""
        jacp, jacr = self._jacobians_fn(state.q)
        torque, force = body_forces[:, 0], body_forces[:, 1]
        return (
            jnp.einsum("bin,bi->n", jacp, force)
            + jnp.einsum("bin,bi->n", jacr, torque)
            + mobility_forces
        )


class MjxForceConverter(GeneralizedForceConverter):
    def __init__(self, matter: MjxMatter) -> None:
        self._matter = matter

    def calc_generalized_forces(self, state: State, body_forces: jax.Array, mobility_forces: jax.Array) -> jax.Array:
        return self._matter.calc_generalized_forces(state, body_forces, mobility_forces)
