"""Reference collaborators: 1D Fisher-KPP front on an adaptive interval mesh.

The problem ``u_t = D u_xx + r u (1 - u)`` with zero-flux boundaries is
discretised with linear finite elements (lumped mass) and a theta scheme in
time.  The classes below implement the collaborator protocols of
:mod:`adaptstep.interfaces` so that the controller can be exercised end to
end:

* :class:`ThetaTimeStep` - time discretization (``prepare``)
* :class:`NewtonSolver` - nonlinear solver (``apply``)
* :class:`GradientJumpEstimator` - error estimator and mesh refiner

A travelling front is a good stress test for the controller: the steep
region needs fine elements which become superfluous once the front has
passed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.linalg import solve_banded

from ..history import HistoryBuffer
from ..schema import FisherKPP

logger = logging.getLogger(__name__)


class IntervalMesh:
    """Nodes of a 1D mesh with bisection levels for refinement and coarsening."""

    def __init__(self, nodes: np.ndarray, node_level: Optional[np.ndarray] = None) -> None:
        nodes = np.asarray(nodes, dtype=float)
        if nodes.ndim != 1 or nodes.size < 2:
            raise ValueError("mesh requires at least two nodes")
        if np.any(np.diff(nodes) <= 0.0):
            raise ValueError("mesh nodes must be strictly increasing")
        self.nodes = nodes
        if node_level is None:
            node_level = np.zeros(nodes.size, dtype=int)
        self.node_level = np.asarray(node_level, dtype=int)
        self.element_level = self._element_levels()

    @classmethod
    def uniform(cls, length: float, n_elements: int) -> "IntervalMesh":
        return cls(np.linspace(0.0, float(length), int(n_elements) + 1))

    @property
    def h(self) -> np.ndarray:
        return np.diff(self.nodes)

    @property
    def num_elements(self) -> int:
        return self.nodes.size - 1

    def _element_levels(self) -> np.ndarray:
        # an element is as deep as the deeper of its two end nodes
        return np.maximum(self.node_level[:-1], self.node_level[1:])

    def refine(self, element_mask: np.ndarray) -> None:
        """Bisect every marked element."""

        mask = np.asarray(element_mask, dtype=bool)
        mids = 0.5 * (self.nodes[:-1] + self.nodes[1:])[mask]
        mid_levels = self.element_level[mask] + 1
        nodes = np.concatenate([self.nodes, mids])
        levels = np.concatenate([self.node_level, mid_levels])
        order = np.argsort(nodes, kind="mergesort")
        self.nodes = nodes[order]
        self.node_level = levels[order]
        self.element_level = self._element_levels()

    def removable_nodes(self) -> np.ndarray:
        """Interior nodes whose two adjacent elements are bisection siblings."""

        lvl = self.node_level[1:-1]
        left = self.element_level[:-1]
        right = self.element_level[1:]
        interior = (lvl > 0) & (lvl == left) & (lvl == right)
        return np.concatenate([[False], interior, [False]])

    def coarsen(self, node_mask: np.ndarray) -> None:
        """Remove the marked nodes, merging their two adjacent elements."""

        keep = ~np.asarray(node_mask, dtype=bool)
        keep[0] = keep[-1] = True
        self.nodes = self.nodes[keep]
        self.node_level = self.node_level[keep]
        self.element_level = self._element_levels()


def fisher_reaction(u: np.ndarray, rate: float) -> np.ndarray:
    return rate * u * (1.0 - u)


def fisher_reaction_derivative(u: np.ndarray, rate: float) -> np.ndarray:
    return rate * (1.0 - 2.0 * u)


class ThetaTimeStep:
    """Theta scheme for the lumped-mass finite element system."""

    def __init__(self, mesh: IntervalMesh, params: FisherKPP) -> None:
        self.mesh = mesh
        self.params = params
        self.theta = float(params.theta)
        self.u_old: Optional[np.ndarray] = None
        self.t0: Optional[float] = None
        self.dt: Optional[float] = None
        self.current: Optional[np.ndarray] = None

    def prepare(self, history: HistoryBuffer, dt: float) -> None:
        self.u_old = history.latest()
        self.t0 = history.time(0)
        self.dt = float(dt)
        self.current = None

    def lumped_mass(self) -> np.ndarray:
        h = self.mesh.h
        m = np.zeros(self.mesh.nodes.size)
        m[:-1] += 0.5 * h
        m[1:] += 0.5 * h
        return m

    def stiffness_apply(self, u: np.ndarray) -> np.ndarray:
        flux = self.params.diffusivity * np.diff(u) / self.mesh.h
        out = np.zeros_like(u)
        out[:-1] -= flux
        out[1:] += flux
        return out

    def residual(self, u: np.ndarray) -> np.ndarray:
        if self.u_old is None or self.dt is None:
            raise RuntimeError("prepare() must be called before assembling")
        p = self.params
        m = self.lumped_mass()
        res = m * (u - self.u_old)
        res += self.dt * self.theta * (self.stiffness_apply(u) - m * fisher_reaction(u, p.growth_rate))
        if self.theta < 1.0:
            u_old = self.u_old
            res += self.dt * (1.0 - self.theta) * (
                self.stiffness_apply(u_old) - m * fisher_reaction(u_old, p.growth_rate)
            )
        return res

    def jacobian_banded(self, u: np.ndarray) -> np.ndarray:
        """Return the tridiagonal Jacobian in ``solve_banded`` layout."""

        p = self.params
        m = self.lumped_mass()
        k_el = p.diffusivity / self.mesh.h
        k_diag = np.zeros(u.size)
        k_diag[:-1] += k_el
        k_diag[1:] += k_el
        scale = self.dt * self.theta
        ab = np.zeros((3, u.size))
        ab[1] = m + scale * (k_diag - m * fisher_reaction_derivative(u, p.growth_rate))
        ab[0, 1:] = -scale * k_el
        ab[2, :-1] = -scale * k_el
        return ab


class NewtonSolver:
    """Plain Newton iteration on :class:`ThetaTimeStep` with a banded linear solve."""

    def __init__(self, time_step: ThetaTimeStep, *, tol: float = 1.0e-10, max_iter: int = 8) -> None:
        self.time_step = time_step
        self.tol = float(tol)
        self.max_iter = int(max_iter)
        self.last_iterations = 0

    def apply(self, state: np.ndarray) -> bool:
        ts = self.time_step
        u = state
        res = ts.residual(u)
        norm0 = float(np.max(np.abs(res))) if res.size else 0.0
        for it in range(1, self.max_iter + 1):
            if not np.all(np.isfinite(res)):
                break
            try:
                du = solve_banded((1, 1), ts.jacobian_banded(u), -res)
            except (np.linalg.LinAlgError, ValueError) as exc:
                logger.debug("linear solve failed in Newton step %d: %s", it, exc)
                break
            u += du
            res = ts.residual(u)
            norm = float(np.max(np.abs(res)))
            self.last_iterations = it
            if not np.isfinite(norm):
                break
            if norm <= self.tol * max(1.0, norm0) or float(np.max(np.abs(du))) <= self.tol:
                ts.current = u
                return True
        self.last_iterations = self.max_iter
        return False


class GradientJumpEstimator:
    """Element indicator from jumps of the discrete gradient, plus the mesh refiner.

    ``eta_e = h_e * (|J_left| + |J_right|) / 2`` where ``J`` are the slope
    jumps at the element's end nodes.  Elements with ``eta_e > tolerance``
    are refined (up to ``max_level``); sibling pairs whose indicators are
    both below ``coarsen_ratio * tolerance`` are merged.
    """

    def __init__(
        self,
        mesh: IntervalMesh,
        time_step: ThetaTimeStep,
        *,
        max_level: int = 6,
        coarsen_ratio: float = 0.1,
    ) -> None:
        self.mesh = mesh
        self.time_step = time_step
        self.max_level = int(max_level)
        self.coarsen_ratio = float(coarsen_ratio)
        self.tolerance: Optional[float] = None
        self._refine_mask: Optional[np.ndarray] = None
        self._coarsen_mask: Optional[np.ndarray] = None
        self._previous_nodes: Optional[np.ndarray] = None
        self._error_valid = True

    def indicators(self, u: Optional[np.ndarray] = None) -> np.ndarray:
        if u is None:
            u = self.time_step.current
        if u is None:
            raise RuntimeError("no converged solution available for error estimation")
        h = self.mesh.h
        slopes = np.diff(u) / h
        jumps = np.zeros(u.size)
        jumps[1:-1] = np.abs(np.diff(slopes))
        return h * 0.5 * (jumps[:-1] + jumps[1:])

    def mark_for_refinement(self, tolerance: float) -> int:
        self.tolerance = float(tolerance)
        eta = self.indicators()
        mask = (eta > tolerance) & (self.mesh.element_level < self.max_level)
        self._refine_mask = mask
        self._error_valid = True
        return int(np.count_nonzero(mask))

    def mark_for_coarsening(self) -> int:
        tol = self.tolerance
        if tol is None:
            self._coarsen_mask = None
            return 0
        eta = self.indicators()
        small = eta < self.coarsen_ratio * tol
        removable = self.mesh.removable_nodes()
        candidates = removable.copy()
        candidates[1:-1] &= small[:-1] & small[1:]
        self._coarsen_mask = candidates
        return 2 * int(np.count_nonzero(candidates))

    def clear_marks(self) -> None:
        self._refine_mask = None
        self._coarsen_mask = None

    def refine(self) -> None:
        if self._refine_mask is None or not np.any(self._refine_mask):
            return
        self._previous_nodes = self.mesh.nodes.copy()
        self.mesh.refine(self._refine_mask)
        self._refine_mask = None

    def coarsen(self) -> None:
        if self._coarsen_mask is None or not np.any(self._coarsen_mask):
            return
        self._previous_nodes = self.mesh.nodes.copy()
        self.mesh.coarsen(self._coarsen_mask)
        self._coarsen_mask = None

    def num_elements(self) -> int:
        return self.mesh.num_elements

    def invalidate_error(self) -> None:
        self._error_valid = False

    def is_error_valid(self) -> bool:
        # valid once indicators were computed on the current mesh and step
        return self._error_valid

    def transfer(self, values: np.ndarray) -> np.ndarray:
        previous = self._previous_nodes
        if previous is None or (previous.size == self.mesh.nodes.size and np.array_equal(previous, self.mesh.nodes)):
            return np.array(values, copy=True)
        return np.interp(self.mesh.nodes, previous, values)


@dataclass
class FisherKPPSetup:
    """Wired collaborator set for one run."""

    mesh: IntervalMesh
    time_step: ThetaTimeStep
    solver: NewtonSolver
    estimator: GradientJumpEstimator
    initial_state: np.ndarray


def initial_front(x: np.ndarray, position: float, width: float) -> np.ndarray:
    return 0.5 * (1.0 - np.tanh((x - position) / width))


def build_problem(params: FisherKPP) -> FisherKPPSetup:
    """Create mesh, discretization, solver and estimator from ``params``."""

    mesh = IntervalMesh.uniform(params.length, params.n_elements)
    time_step = ThetaTimeStep(mesh, params)
    solver = NewtonSolver(time_step, tol=params.newton_tol, max_iter=params.newton_max_iter)
    estimator = GradientJumpEstimator(
        mesh,
        time_step,
        max_level=params.max_refinement_level,
        coarsen_ratio=params.coarsen_ratio,
    )
    u0 = initial_front(mesh.nodes, params.front_position, params.front_width)
    return FisherKPPSetup(mesh, time_step, solver, estimator, u0)


__all__ = [
    "IntervalMesh",
    "ThetaTimeStep",
    "NewtonSolver",
    "GradientJumpEstimator",
    "FisherKPPSetup",
    "build_problem",
    "initial_front",
    "fisher_reaction",
]
