"""Abstract base class for the matter subsystem the constraints are evaluated against."""

from abc import ABC, abstractmethod
from typing import Iterable

import jax

from .indices import GROUND, MobilizedBodyIndex
from .state import (
    AccelerationCache,
    ModelCache,
    PositionCache,
    State,
    Subtree,
    VelocityCache,
)


class MatterSubsystem(ABC):
    """
    A tree of mobilized bodies. Body 0 is ground; every other body is attached
    to its parent by a mobilizer with nq(body) coordinates and nu(body) speeds.
    All kinematics it reports are measured from and expressed in ground.
    """

    @property
    @abstractmethod
    def num_bodies(self) -> int:
        """Number of mobilized bodies including ground."""
        raise NotImplementedError

    @property
    @abstractmethod
    def nq(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def nu(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def parent(self, body: MobilizedBodyIndex) -> MobilizedBodyIndex:
        """Inboard body of `body`. Ground has no parent."""
        raise NotImplementedError

    @abstractmethod
    def default_q(self) -> jax.Array:
        raise NotImplementedError

    @abstractmethod
    def realize_model(self) -> ModelCache:
        raise NotImplementedError

    @abstractmethod
    def realize_position(self, state: State) -> PositionCache:
        raise NotImplementedError

    @abstractmethod
    def realize_velocity(self, state: State) -> VelocityCache:
        """Needs the state's position cache."""
        raise NotImplementedError

    @abstractmethod
    def realize_acceleration(self, state: State) -> AccelerationCache:
        """Needs the state's position and velocity caches."""
        raise NotImplementedError

    @abstractmethod
    def calc_qdot(self, q: jax.Array, u: jax.Array) -> jax.Array:
        """qdot = N(q) u for the whole system."""
        raise NotImplementedError

    def find_body_by_name(self, name: str) -> MobilizedBodyIndex:
        raise ValueError(f"{type(self).__name__} has no body named '{name}'")

    def body_index(self, body: int | str) -> MobilizedBodyIndex:
        """Resolve a body given by index or by name."""
        if isinstance(body, str):
            return self.find_body_by_name(body)
        if not 0 <= body < self.num_bodies:
            raise ValueError(f"Body {body} out of range [0, {self.num_bodies})")
        return MobilizedBodyIndex(int(body))

    def path_to_ground(self, body: MobilizedBodyIndex) -> list[MobilizedBodyIndex]:
        """`body`, its parent, and so on up to and including ground."""
        if not 0 <= body < self.num_bodies:
            raise ValueError(f"Body {body} out of range [0, {self.num_bodies})")
        path = [body]
        while path[-1] != GROUND:
            path.append(self.parent(path[-1]))
        return path

    def find_subtree(self, bodies: Iterable[MobilizedBodyIndex]) -> Subtree:
        """Outmost common ancestor of `bodies` and all bodies on the paths to it.

        With no bodies at all the ancestor is ground.
        """
        paths = [self.path_to_ground(b) for b in bodies]
        if not paths:
            return Subtree(GROUND, (GROUND,))

        common = set(paths[0])
        for path in paths[1:]:
            common &= set(path)
        # Paths run outward-in, so the first shared entry is the deepest.
        ancestor = next(b for b in paths[0] if b in common)

        members: list[MobilizedBodyIndex] = []
        for path in paths:
            for b in path:
                if b not in members:
                    members.append(b)
                if b == ancestor:
                    break
        return Subtree(ancestor, tuple(sorted(members)))
