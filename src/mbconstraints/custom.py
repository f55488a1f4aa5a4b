"""
User-defined constraints.

A `CustomImplementation` supplies the equations; `Custom` wraps it so the
subsystem can adopt it like any built-in constraint. Implementations can be
registered under a name and built from configs:

    @register_custom_implementation("coupler")
    class Coupler(CustomImplementation):
        ...

    constraint = Custom.create("coupler", ...)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

import jax

from .constraints import Constraint, ConstraintConfig, ForcePair
from .indices import EquationCounts
from .state import AccelerationCache, PositionCache, State, VelocityCache

if TYPE_CHECKING:
    from .matter import MatterSubsystem

CUSTOM_IMPLEMENTATIONS: dict[str, type["CustomImplementation"]] = {}


def register_custom_implementation(
    name: str,
) -> Callable[[type["CustomImplementation"]], type["CustomImplementation"]]:
    """Class decorator adding an implementation to the registry under `name`."""

    def decorator(cls: type["CustomImplementation"]) -> type["CustomImplementation"]:
        if name in CUSTOM_IMPLEMENTATIONS:
            raise ValueError(f"Custom implementation '{name}' already registered")
        CUSTOM_IMPLEMENTATIONS[name] = cls
        return cls

    return decorator


def get_custom_implementation(name: str) -> type["CustomImplementation"]:
    try:
        return CUSTOM_IMPLEMENTATIONS[name]
    except KeyError:
        raise ValueError(
            f"No custom implementation named '{name}', known: {sorted(CUSTOM_IMPLEMENTATIONS)}"
        ) from None


class CustomImplementation(ABC):
    """
    Equations of a user-defined constraint. Set mp, mv and ma and override the
    hooks of each nonzero category. Every hook receives the wrapping `Custom`
    constraint, whose accessors give the kinematics in the ancestor frame.
    """

    mp: int = 0
    mv: int = 0
    ma: int = 0

    @property
    def counts(self) -> EquationCounts:
        return EquationCounts(self.mp, self.mv, self.ma)

    @abstractmethod
    def register(self, constraint: "Custom") -> None:
        """Add the constrained bodies and mobilizers to `constraint`."""
        raise NotImplementedError

    def calc_topology_cache(self, constraint: "Custom") -> None:
        pass

    def calc_num_constraint_equations(self, constraint: "Custom", state: State) -> EquationCounts:
        """Counts used from Model stage on. Defaults to the constraint's default counts."""
        return constraint.get_default_num_constraint_equations()

    def realize_model(self, constraint: "Custom", state: State) -> None:
        pass

    def realize_instance(self, constraint: "Custom", state: State) -> None:
        pass

    def realize_time(self, constraint: "Custom", state: State) -> None:
        pass

    def calc_position_errors(self, constraint: "Custom", state: State, cache: PositionCache) -> jax.Array:
        raise NotImplementedError

    def calc_position_dot_errors(self, constraint: "Custom", state: State, cache: VelocityCache) -> jax.Array:
        raise NotImplementedError

    def calc_position_dot_dot_errors(self, constraint: "Custom", state: State, cache: AccelerationCache) -> jax.Array:
        raise NotImplementedError

    def apply_position_constraint_forces(self, constraint: "Custom", state: State, multipliers: jax.Array) -> ForcePair:
        raise NotImplementedError

    def calc_velocity_errors(self, constraint: "Custom", state: State, cache: VelocityCache) -> jax.Array:
        raise NotImplementedError

    def calc_velocity_dot_errors(self, constraint: "Custom", state: State, cache: AccelerationCache) -> jax.Array:
        raise NotImplementedError

    def apply_velocity_constraint_forces(self, constraint: "Custom", state: State, multipliers: jax.Array) -> ForcePair:
        raise NotImplementedError

    def calc_acceleration_errors(self, constraint: "Custom", state: State, cache: AccelerationCache) -> jax.Array:
        raise NotImplementedError

    def apply_acceleration_constraint_forces(
        self, constraint: "Custom", state: State, multipliers: jax.Array
    ) -> ForcePair:
        raise NotImplementedError


class Custom(Constraint):
    def __init__(self, implementation: CustomImplementation) -> None:
        super().__init__(*implementation.counts)
        self._implementation = implementation
        implementation.register(self)

    @classmethod
    def create(cls, name: str, *args: Any, **kwargs: Any) -> "Custom":
        """Instantiate the registered implementation `name` and wrap it."""
        return cls(get_custom_implementation(name)(*args, **kwargs))

    @property
    def implementation(self) -> CustomImplementation:
        return self._implementation

    def calc_topology_cache(self) -> None:
        self._implementation.calc_topology_cache(self)

    def calc_num_constraint_equations_virtual(self, state: State) -> EquationCounts:
        return self._implementation.calc_num_constraint_equations(self, state)

    def realize_model_virtual(self, state: State) -> None:
        self._implementation.realize_model(self, state)

    def realize_instance_virtual(self, state: State) -> None:
        self._implementation.realize_instance(self, state)

    def realize_time_virtual(self, state: State) -> None:
        self._implementation.realize_time(self, state)

    def calc_position_errors(self, state: State, cache: PositionCache) -> jax.Array:
        return self._implementation.calc_position_errors(self, state, cache)

    def calc_position_dot_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return self._implementation.calc_position_dot_errors(self, state, cache)

    def calc_position_dot_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return self._implementation.calc_position_dot_dot_errors(self, state, cache)

    def apply_position_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        return self._implementation.apply_position_constraint_forces(self, state, multipliers)

    def calc_velocity_errors(self, state: State, cache: VelocityCache) -> jax.Array:
        return self._implementation.calc_velocity_errors(self, state, cache)

    def calc_velocity_dot_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return self._implementation.calc_velocity_dot_errors(self, state, cache)

    def apply_velocity_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        return self._implementation.apply_velocity_constraint_forces(self, state, multipliers)

    def calc_acceleration_errors(self, state: State, cache: AccelerationCache) -> jax.Array:
        return self._implementation.calc_acceleration_errors(self, state, cache)

    def apply_acceleration_constraint_forces(self, state: State, multipliers: jax.Array) -> ForcePair:
        return self._implementation.apply_acceleration_constraint_forces(self, state, multipliers)


@dataclass
class CustomConfig(ConstraintConfig):
    """
    name: registry key of the implementation.
    bodies: implementation arguments that name bodies, resolved through the matter.
    params: every other implementation argument.
    """

    name: str = ""
    bodies: dict[str, int | str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)

    def build_constraint(self, matter: "MatterSubsystem") -> Custom:
        resolved = {key: matter.body_index(body) for key, body in self.bodies.items()}
        return Custom.create(self.name, **resolved, **self.params)
