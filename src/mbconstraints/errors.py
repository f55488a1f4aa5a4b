"""Exceptions raised for programming errors by callers of the constraint core.

These are assertion-style failures: they are never caught inside the package
and a correct caller never triggers them.
"""


class ContractViolation(AssertionError):
    """A caller broke the calling contract of a constraint or subsystem."""


class StageNotRealizedError(ContractViolation):
    """A quantity was requested before the stage that defines it was realized."""


class EquationCountMismatch(ContractViolation):
    """An expected number of constraint equations did not match the actual one."""


class BufferTooSmallError(ContractViolation):
    """A caller-owned output buffer is shorter than the data written to it."""


def require(condition: bool, message: str, error: type[ContractViolation] = ContractViolation) -> None:
    if not condition:
        raise error(message)
