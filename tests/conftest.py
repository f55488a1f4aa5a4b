"""Shared fixtures: a small mixed tree of free, pin and slider mobilizers and random states on it."""

from typing import Callable

import jax
import jax.numpy as jnp
import numpy as np
import pytest

jax.config.update("jax_enable_x64", True)

from mbconstraints import (  # noqa: E402
    ConstraintSubsystem,
    FreeMobilizer,
    PinMobilizer,
    SliderMobilizer,
    State,
    TreeForceConverter,
    TreeMatter,
)


def random_unit_quaternion(rng: np.random.Generator) -> np.ndarray:
    quat = rng.normal(size=4)
    return quat / np.linalg.norm(quat)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def tree_matter() -> TreeMatter:
    """
    ground
    ├── free1 (free)
    │   └── pin (pin about z at (0.3, 0, 0))
    │       └── slider (slider along (1, 1, 0) from (0, 0.2, 0))
    └── free2 (free)
    """
    matter = TreeMatter()
    free1 = matter.add_body(FreeMobilizer(), name="free1")
    matter.add_body(FreeMobilizer(position=jnp.array([1.0, 0.0, 0.0])), name="free2")
    pin = matter.add_body(
        PinMobilizer(jnp.array([0.0, 0.0, 1.0]), jnp.array([0.3, 0.0, 0.0])), parent=free1, name="pin"
    )
    matter.add_body(
        SliderMobilizer(jnp.array([1.0, 1.0, 0.0]), jnp.array([0.0, 0.2, 0.0])), parent=pin, name="slider"
    )
    return matter


@pytest.fixture
def subsystem(tree_matter: TreeMatter) -> ConstraintSubsystem:
    return ConstraintSubsystem(tree_matter, TreeForceConverter(tree_matter))


@pytest.fixture
def random_state(tree_matter: TreeMatter, rng: np.random.Generator) -> Callable[[], State]:
    """Factory for unrealized states with random q (unit quaternions), u and udot."""

    def make() -> State:
        q = np.asarray(tree_matter.default_q()).copy()
        q[0:3] = rng.normal(size=3)
        q[3:7] = random_unit_quaternion(rng)
        q[7:10] = rng.normal(size=3)
        q[10:14] = random_unit_quaternion(rng)
        q[14:] = rng.normal(size=2)
        return State(
            q=jnp.asarray(q),
            u=jnp.asarray(rng.normal(size=tree_matter.nu)),
            udot=jnp.asarray(rng.normal(size=tree_matter.nu)),
        )

    return make
