# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Nonlinear optimizers for jaxsam.

This module implements the iterative solvers that drive a `FactorGraph`
towards the assignment of minimum total error:

    linearize → damp → eliminate → retract → accept / reject

Key Concepts
------------
LMConfig
    Dataclass holding the Levenberg–Marquardt configuration:
    - lambda_initial / lambda_factor / lambda bounds: trust-region damping
    - max_lambda_trials: how many rejected steps one iteration may retry
    - rel_tol / abs_tol / error_tol / step_tol: convergence tolerances
    - max_iters: iteration budget
    - linear_solver: "elimination" (sequential QR in the ordering) or
      "dense" (normal equations)

LevenbergMarquardtOptimizer(graph, ordering, values, rel_tol=..., config=...)
    State machine INITIALIZED → ITERATING → {CONVERGED, FAILED}.
    Each `iterate()` linearizes once at the current values, then solves

        (JᵀJ + λ I) δ = −Jᵀ r

    retracting the values by δ. A step that does not increase the error is
    accepted and λ shrinks; otherwise λ grows and the same linear system is
    re-solved. Damping interpolates between Gauss–Newton (λ → 0, fast near
    the optimum) and short gradient steps (λ large, robust far from it).

GNConfig / GaussNewtonOptimizer
    Undamped variant: always takes the Gauss–Newton step. Its error history
    records every step, so unlike LM it can rise.

Termination
-----------
Convergence (relative or absolute error decrease, error or step norm below
tolerance) and failure (iteration budget exhausted, or λ exceeded its bound
without finding a non-increasing step) are distinct terminal statuses with a
`TerminationReason`. Rejected steps are never surfaced as errors.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

import jax.numpy as jnp
from loguru import logger

from jaxsam.core.errors import IndeterminantLinearSystemError, MissingVariableError
from jaxsam.core.factor_graph import FactorGraph
from jaxsam.core.types import Key
from jaxsam.core.values import Values
from jaxsam.slam.manifold import build_manifold_metadata
from .linear import GaussianFactorGraph
from .ordering import Ordering


class OptimizerStatus(Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"


class TerminationReason(Enum):
    NONE = "none"
    ERROR_TOLERANCE = "error below tolerance"
    RELATIVE_DECREASE = "relative decrease below tolerance"
    ABSOLUTE_DECREASE = "absolute decrease below tolerance"
    STEP_NORM = "step norm below tolerance"
    MAX_ITERATIONS = "maximum iterations reached"
    LAMBDA_EXHAUSTED = "damping exhausted without improvement"


@dataclass
class GNConfig:
    max_iters: int = 100
    rel_tol: float = 1e-5
    abs_tol: float = 1e-5
    error_tol: float = 0.0
    step_tol: float = 1e-9
    linear_solver: str = "elimination"   # or "dense"


@dataclass
class LMConfig(GNConfig):
    lambda_initial: float = 1e-5
    lambda_factor: float = 10.0
    lambda_upper_bound: float = 1e5
    lambda_lower_bound: float = 0.0
    max_lambda_trials: int = 20
    diagonal_damping: bool = False


@dataclass(frozen=True)
class OptimizerState:
    values: Values
    error: float
    lambda_: float
    iterations: int
    status: OptimizerStatus
    reason: TerminationReason = TerminationReason.NONE

    @property
    def done(self) -> bool:
        return self.status in (OptimizerStatus.CONVERGED, OptimizerStatus.FAILED)


@dataclass(frozen=True)
class OptimizerResult:
    values: Values
    error: float
    status: OptimizerStatus
    reason: TerminationReason
    iterations: int
    error_history: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def converged(self) -> bool:
        return self.status is OptimizerStatus.CONVERGED


def check_convergence(
    cfg: GNConfig,
    current_error: float,
    new_error: float,
    step_norm: float,
) -> Optional[TerminationReason]:
    if new_error <= cfg.error_tol:
        return TerminationReason.ERROR_TOLERANCE
    if step_norm <= cfg.step_tol:
        return TerminationReason.STEP_NORM
    absolute_decrease = current_error - new_error
    if absolute_decrease < 0.0:
        return None
    if current_error > 0.0 and absolute_decrease / current_error <= cfg.rel_tol:
        return TerminationReason.RELATIVE_DECREASE
    if absolute_decrease <= cfg.abs_tol:
        return TerminationReason.ABSOLUTE_DECREASE
    return None


def _step_norm(delta: Dict[Key, jnp.ndarray]) -> float:
    return math.sqrt(sum(float(jnp.dot(d, d)) for d in delta.values()))


class NonlinearOptimizer:
    """Shared bookkeeping of the Gauss–Newton family of optimizers."""

    def __init__(
        self,
        graph: FactorGraph,
        ordering: Union[Ordering, List],
        values: Values,
        config: GNConfig,
        lambda_initial: float = 0.0,
    ) -> None:
        if not isinstance(ordering, Ordering):
            ordering = Ordering(ordering)
        ordering.validate(graph)
        for key in graph.keys():
            if key not in values:
                raise MissingVariableError(key, "referenced by the graph but not in initial values")
        if config.linear_solver not in ("elimination", "dense"):
            raise ValueError(f"Unknown linear solver '{config.linear_solver}'")

        self.graph = graph
        self.ordering = ordering
        self.config = config
        self._block_slices, _ = build_manifold_metadata(values, ordering)

        error = graph.error(values)
        self.state = OptimizerState(
            values=values,
            error=error,
            lambda_=lambda_initial,
            iterations=0,
            status=OptimizerStatus.INITIALIZED,
        )
        self.error_history: List[float] = [error]
        logger.info(
            "{} on {} factors, {} variables, initial error {:.6e}",
            type(self).__name__,
            len(graph),
            len(ordering),
            error,
        )

    # --- accessors ---

    @property
    def values(self) -> Values:
        return self.state.values

    @property
    def error(self) -> float:
        return self.state.error

    @property
    def status(self) -> OptimizerStatus:
        return self.state.status

    @property
    def done(self) -> bool:
        return self.state.done

    # --- solve ---

    def _solve(self, linear: GaussianFactorGraph, lam: float) -> Dict[Key, jnp.ndarray]:
        diagonal = getattr(self.config, "diagonal_damping", False)
        if self.config.linear_solver == "dense":
            return linear.solve_dense(self._block_slices, lam=lam, diagonal=diagonal)
        system = linear.damped(lam, diagonal=diagonal) if lam > 0.0 else linear
        return system.optimize(self.ordering)

    def _finish(self, state: OptimizerState) -> OptimizerState:
        self.state = state
        if state.done:
            logger.info(
                "{} {} after {} iterations ({}), error {:.6e}",
                type(self).__name__,
                state.status.value,
                state.iterations,
                state.reason.value,
                state.error,
            )
        return state

    def _after_step(
        self,
        values: Values,
        new_error: float,
        lam: float,
        reason: Optional[TerminationReason],
    ) -> OptimizerState:
        iterations = self.state.iterations + 1
        if reason is not None:
            status = OptimizerStatus.CONVERGED
        elif iterations >= self.config.max_iters:
            status, reason = OptimizerStatus.FAILED, TerminationReason.MAX_ITERATIONS
        else:
            status, reason = OptimizerStatus.ITERATING, TerminationReason.NONE
        return OptimizerState(values, new_error, lam, iterations, status, reason)

    def iterate(self) -> OptimizerState:
        raise NotImplementedError

    def optimize(self) -> OptimizerResult:
        """Iterate until converged or failed."""
        while not self.done:
            self.iterate()
        s = self.state
        return OptimizerResult(
            values=s.values,
            error=s.error,
            status=s.status,
            reason=s.reason,
            iterations=s.iterations,
            error_history=tuple(self.error_history),
        )


class LevenbergMarquardtOptimizer(NonlinearOptimizer):
    """Trust-region Levenberg–Marquardt on a manifold-valued factor graph."""

    def __init__(
        self,
        graph: FactorGraph,
        ordering: Union[Ordering, List],
        values: Values,
        rel_tol: Optional[float] = None,
        config: Optional[LMConfig] = None,
    ) -> None:
        cfg = config or LMConfig()
        if rel_tol is not None:
            cfg = replace(cfg, rel_tol=rel_tol)
        super().__init__(graph, ordering, values, cfg, lambda_initial=cfg.lambda_initial)

    def iterate(self) -> OptimizerState:
        s = self.state
        if s.done:
            return s
        cfg: LMConfig = self.config

        if s.error <= cfg.error_tol:
            return self._finish(
                replace(s, status=OptimizerStatus.CONVERGED, reason=TerminationReason.ERROR_TOLERANCE)
            )

        linear = self.graph.linearize(s.values, self.ordering)
        lam = s.lambda_
        for _ in range(cfg.max_lambda_trials):
            try:
                delta = self._solve(linear, lam)
            except IndeterminantLinearSystemError as e:
                logger.debug("lambda {:.3e}: {}", lam, e)
                delta, new_error = None, math.inf
            else:
                candidate = s.values.retract(delta)
                new_error = self.graph.error(candidate)
                logger.debug("trying lambda {:.3e}, error {:.6e}", lam, new_error)

            if math.isfinite(new_error) and new_error <= s.error:
                step_norm = _step_norm(delta)
                reason = check_convergence(cfg, s.error, new_error, step_norm)
                new_lam = max(lam / cfg.lambda_factor, cfg.lambda_lower_bound)
                self.error_history.append(new_error)
                logger.info(
                    "iteration {}: error {:.6e} -> {:.6e}, lambda {:.1e}, |delta| {:.3e}",
                    s.iterations + 1,
                    s.error,
                    new_error,
                    lam,
                    step_norm,
                )
                return self._finish(self._after_step(candidate, new_error, new_lam, reason))

            if delta is not None and _step_norm(delta) <= cfg.step_tol:
                # no representable step improves the error any further
                return self._finish(
                    replace(
                        s,
                        iterations=s.iterations + 1,
                        status=OptimizerStatus.CONVERGED,
                        reason=TerminationReason.STEP_NORM,
                    )
                )

            lam = max(lam, 1e-12) * cfg.lambda_factor
            if lam > cfg.lambda_upper_bound:
                break

        logger.warning(
            "iteration {}: no step decreased error {:.6e} up to lambda {:.1e}",
            s.iterations + 1,
            s.error,
            lam,
        )
        return self._finish(
            replace(
                s,
                lambda_=lam,
                iterations=s.iterations + 1,
                status=OptimizerStatus.FAILED,
                reason=TerminationReason.LAMBDA_EXHAUSTED,
            )
        )


class GaussNewtonOptimizer(NonlinearOptimizer):
    """Undamped Gauss–Newton: every step is taken."""

    def __init__(
        self,
        graph: FactorGraph,
        ordering: Union[Ordering, List],
        values: Values,
        rel_tol: Optional[float] = None,
        config: Optional[GNConfig] = None,
    ) -> None:
        cfg = config or GNConfig()
        if rel_tol is not None:
            cfg = replace(cfg, rel_tol=rel_tol)
        super().__init__(graph, ordering, values, cfg)

    def iterate(self) -> OptimizerState:
        s = self.state
        if s.done:
            return s
        if s.error <= self.config.error_tol:
            return self._finish(
                replace(s, status=OptimizerStatus.CONVERGED, reason=TerminationReason.ERROR_TOLERANCE)
            )

        linear = self.graph.linearize(s.values, self.ordering)
        delta = self._solve(linear, 0.0)
        candidate = s.values.retract(delta)
        new_error = self.graph.error(candidate)
        step_norm = _step_norm(delta)
        reason = check_convergence(self.config, s.error, new_error, step_norm)
        self.error_history.append(new_error)
        logger.info(
            "iteration {}: error {:.6e} -> {:.6e}, |delta| {:.3e}",
            s.iterations + 1,
            s.error,
            new_error,
            step_norm,
        )
        return self._finish(self._after_step(candidate, new_error, 0.0, reason))
