"""pyhdg.assembly.hdg_local
Element kernels of the hybridized (HDG) mixed discretisation of

    grad(u) + q/kappa = 0,   div(q) = f

on axis-aligned quads. Volume unknowns (q_x, q_y, u) live in the tensor
Legendre space Q_p; the trace lambda lives on the four faces in a Legendre
(modal) or GLL-Lagrange (nodal) space of degree p. The numerical flux is
``q_hat.n = q.n + tau (u - lambda)``.

Per element the local problem

    [ A    B ] [q]   [-C]          [0]
    [-B^T  D ] [u] = [ E] lambda + [F]

is solved once for every trace basis function (static condensation), which
gives the elimination operator ``[q; u] = S lambda + p0`` and the condensed
coupling block

    K_e = G - C^T S_q - E^T S_u,    r_e = C^T p0_q + E^T p0_u - <g_N, mu>.

Dirichlet faces are eliminated as well: their trace is the L2 projection of
``g_D`` and their columns of K_e are moved to the right-hand side.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np
import scipy.linalg as sla

from pyhdg.core.topology import Element, LOCAL_FACE_NORMALS
from pyhdg.fem.analytic import ManufacturedSolution
from pyhdg.fem.basis import FACE_BASES, VolumeBasis, face_tabulation, volume_tabulation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiffusionProblem:
    """Problem data: exact solution (gives kappa, f, g_D, g_N) and the Dirichlet boundary ids."""

    exact: ManufacturedSolution = field(default_factory=ManufacturedSolution)
    dirichlet_ids: Tuple[int, ...] = (0, 1, 2)

    @property
    def kappa(self) -> float:
        return self.exact.kappa

    def is_dirichlet(self, boundary_id) -> bool:
        return boundary_id is not None and boundary_id in self.dirichlet_ids

    def is_neumann(self, boundary_id) -> bool:
        return boundary_id is not None and boundary_id not in self.dirichlet_ids


@dataclass(frozen=True)
class EliminationOperator:
    """Recovers the volume coefficients of one element from its trace values."""

    element_id: int
    S: np.ndarray                 # (3*n_vol, n_trace)
    p0: np.ndarray                # (3*n_vol,)
    dirichlet_mask: np.ndarray    # (n_trace,) bool
    dirichlet_values: np.ndarray  # (n_trace,) projected g_D, zero elsewhere

    @property
    def n_vol(self) -> int:
        return self.p0.size // 3

    def reconstruct(self, trace: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Volume coefficients ``(u, q)`` with ``q`` of shape (2, n_vol)."""
        lam = np.where(self.dirichlet_mask, self.dirichlet_values, trace)
        sol = self.S @ lam + self.p0
        n = self.n_vol
        return sol[2 * n:], sol[:2 * n].reshape(2, n)


@dataclass(frozen=True)
class LocalBlock:
    coupling: np.ndarray          # (n_trace, n_trace), symmetric positive definite
    rhs: np.ndarray               # (n_trace,)
    elimination: EliminationOperator


class HDGDiffusionOperator:
    """Per-element operator: local condensed blocks, exact traces and local errors."""

    def __init__(self, problem: DiffusionProblem | None = None, face_basis: str = "legendre",
                 tau: float = 1.0):
        if face_basis not in FACE_BASES:
            raise ValueError(f"Unknown face basis '{face_basis}'. Choose from {FACE_BASES}.")
        if tau <= 0:
            raise ValueError("tau must be positive")
        self.problem = problem if problem is not None else DiffusionProblem()
        self.face_basis = face_basis
        self.tau = float(tau)
        self._geometry_cache: Dict[tuple, dict] = {}

    @staticmethod
    def n_points(order: int) -> int:
        return order + 2

    # ------------------------------------------------------------------
    # quadrature on the element and its faces
    # ------------------------------------------------------------------
    def _face_points(self, elem: Element, lf: int, order: int):
        """Reference cell coordinates, physical points and weights (incl. jacobian) on local face ``lf``."""
        s, ws, psi = face_tabulation(self.face_basis, order, self.n_points(order))
        one = np.ones_like(s)
        if lf < 2:
            xi, eta, length = (-one if lf == 0 else one), s, elem.hy
        else:
            xi, eta, length = s, (-one if lf == 2 else one), elem.hx
        return xi, eta, elem.map_to_physical(xi, eta), ws * (0.5 * length), psi

    def _geometry(self, elem: Element, order: int) -> dict:
        """Matrices that depend on the cell size only (cached per (order, hx, hy))."""
        key = (order, round(elem.hx, 14), round(elem.hy, 14))
        cached = self._geometry_cache.get(key)
        if cached is not None:
            return cached

        basis = VolumeBasis(order)
        n, nf = basis.n_dofs, order + 1
        nt = 4 * nf
        hx, hy = elem.hx, elem.hy
        _, _, w, V, Dxi, Deta = volume_tabulation(order, self.n_points(order))
        wd = w * (0.25 * hx * hy)
        Dx, Dy = Dxi * (2.0 / hx), Deta * (2.0 / hy)

        mass = (V * wd) @ V.T
        A = np.zeros((2 * n, 2 * n))
        A[:n, :n] = A[n:, n:] = mass / self.problem.kappa
        B = np.vstack([-(Dx * wd) @ V.T, -(Dy * wd) @ V.T])

        C = np.zeros((2 * n, nt))
        D = np.zeros((n, n))
        E = np.zeros((n, nt))
        G = np.zeros((nt, nt))
        face_mass = []
        for lf in range(4):
            xi, eta, _, wf, psi = self._face_points(elem, lf, order)
            Vf = basis.tabulate(xi, eta)[0]
            nx_, ny_ = LOCAL_FACE_NORMALS[lf]
            sl = slice(lf * nf, (lf + 1) * nf)
            Vpsi = (Vf * wf) @ psi.T
            C[:n, sl] += nx_ * Vpsi
            C[n:, sl] += ny_ * Vpsi
            D += self.tau * (Vf * wf) @ Vf.T
            E[:, sl] += self.tau * Vpsi
            fm = (psi * wf) @ psi.T
            G[sl, sl] += self.tau * fm
            face_mass.append(fm)

        M = np.block([[A, B], [-B.T, D]])
        lu = sla.lu_factor(M)
        S = sla.lu_solve(lu, np.vstack([-C, E]))
        K = G - C.T @ S[:2 * n] - E.T @ S[2 * n:]
        K = 0.5 * (K + K.T)
        cached = dict(n=n, nf=nf, lu=lu, S=S, K=K, C=C, E=E, V=V, wd=wd, face_mass=face_mass)
        self._geometry_cache[key] = cached
        return cached

    def _project_on_face(self, elem: Element, lf: int, order: int, values_fn) -> np.ndarray:
        _, _, X, wf, psi = self._face_points(elem, lf, order)
        g = self._geometry(elem, order)
        return np.linalg.solve(g["face_mass"][lf], (psi * wf) @ values_fn(X))

    # ------------------------------------------------------------------
    # operator interface
    # ------------------------------------------------------------------
    def compute_local_block(self, elem: Element, order: int) -> LocalBlock:
        g = self._geometry(elem, order)
        n, nf = g["n"], g["nf"]
        exact = self.problem.exact
        xi, eta, _ = volume_tabulation(order, self.n_points(order))[:3]
        X = elem.map_to_physical(xi, eta)
        F = (g["V"] * g["wd"]) @ exact.f(X)

        p0 = sla.lu_solve(g["lu"], np.concatenate([np.zeros(2 * n), F]))
        rhs = g["C"].T @ p0[:2 * n] + g["E"].T @ p0[2 * n:]

        nt = 4 * nf
        mask = np.zeros(nt, dtype=bool)
        lam_d = np.zeros(nt)
        for lf in range(4):
            bid = elem.boundary_id(lf)
            sl = slice(lf * nf, (lf + 1) * nf)
            if self.problem.is_dirichlet(bid):
                mask[sl] = True
                lam_d[sl] = self._project_on_face(elem, lf, order, exact.u)
            elif self.problem.is_neumann(bid):
                _, _, Xf, wf, psi = self._face_points(elem, lf, order)
                g_n = exact.q(Xf) @ LOCAL_FACE_NORMALS[lf]
                rhs[sl] -= (psi * wf) @ g_n

        K = g["K"]
        if mask.any():
            rhs = rhs - K[:, mask] @ lam_d[mask]
            rhs[mask] = 0.0
        elim = EliminationOperator(element_id=elem.id, S=g["S"], p0=p0,
                                   dirichlet_mask=mask, dirichlet_values=lam_d)
        return LocalBlock(coupling=K, rhs=rhs, elimination=elim)

    def exact_trace(self, elem: Element, order: int) -> np.ndarray:
        """L2 projection of the exact ``u`` onto the trace space of each face, local face order."""
        return np.concatenate([self._project_on_face(elem, lf, order, self.problem.exact.u)
                               for lf in range(4)])

    def l2_errors(self, elem: Element, order: int, u: np.ndarray, q: np.ndarray) -> Tuple[float, float]:
        """Squared L2 errors of ``u`` and ``q`` on one element."""
        xi, eta, w, V = volume_tabulation(order, self.n_points(order) + 1)[:4]
        X = elem.map_to_physical(xi, eta)
        wd = w * (0.25 * elem.hx * elem.hy)
        exact = self.problem.exact
        eu = u @ V - exact.u(X)
        eq = q @ V - exact.q(X).T
        return float(wd @ eu ** 2), float(wd @ (eq ** 2).sum(axis=0))
