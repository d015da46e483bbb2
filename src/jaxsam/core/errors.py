"""
Exceptions raised by jaxsam.

Precondition violations (malformed algebra input, unknown variables, bad
orderings) and unsupported operations are fatal and raised immediately.
Numerical non-convergence is *not* an exception: the optimizers report it
through their status. A rejected trust-region step is handled inside the
optimizer and never reaches the caller.
"""


class MissingVariableError(KeyError):
    """A factor, ordering or lookup referenced a key absent from the assignment."""

    def __init__(self, key, context: str = "") -> None:
        self.key = key
        msg = f"missing variable {key}"
        if context:
            msg = f"{msg} ({context})"
        super().__init__(msg)

    def __str__(self) -> str:
        return str(self.args[0])


class OrderingError(ValueError):
    """An ordering is not a permutation of the graph's variables."""


class NotSkewSymmetricError(ValueError):
    """Vee was given a matrix that is not skew-symmetric."""


class EigenvalueStructureError(ValueError):
    """A generator's eigenvalues are not of the form {+ai, -ai, +bi, -bi}."""


class UnsupportedOperationError(NotImplementedError):
    """The operation has no closed form (or no derivative) for this manifold."""


class IndeterminantLinearSystemError(RuntimeError):
    """Elimination hit a variable whose linear system is rank deficient."""

    def __init__(self, key) -> None:
        self.key = key
        super().__init__(
            f"indeterminant linear system when eliminating {key}; "
            "the variable is not fully constrained"
        )
