"""Realization stages, in the order they must be completed."""

from enum import IntEnum


class Stage(IntEnum):
    EMPTY = 0
    TOPOLOGY = 1
    MODEL = 2
    INSTANCE = 3
    TIME = 4
    POSITION = 5
    VELOCITY = 6
    ACCELERATION = 7

    def next(self) -> "Stage":
        if self is Stage.ACCELERATION:
            raise ValueError("Acceleration is the last stage")
        return Stage(self + 1)

    def prev(self) -> "Stage":
        if self is Stage.EMPTY:
            raise ValueError("Empty is the first stage")
        return Stage(self - 1)

    @classmethod
    def realizable(cls) -> list["Stage"]:
        """All stages after EMPTY, in realization order."""
        return [s for s in cls if s is not cls.EMPTY]
