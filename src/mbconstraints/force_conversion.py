from abc import ABC, abstractmethod

import jax

from .state import State


class GeneralizedForceConverter(ABC):
    """Maps spatial body forces and mobility forces to generalized forces (length nu)."""

    @abstractmethod
    def calc_generalized_forces(
        self,
        state: State,
        body_forces: jax.Array,
        mobility_forces: jax.Array,
    ) -> jax.Array:
        """
        body_forces: (num_bodies, 2, 3), [torque, force] per body, applied at the
        body origin and expressed in ground.
        mobility_forces: (nu,), added to the generalized force directly.
        Needs Position stage.
        """
        raise NotImplementedError
