"""pyhdg.fem.basis
1-D Legendre / Lagrange bases, Gauss rules and the tensor-product volume basis
used by the HDG element operator. Everything lives on the reference interval
[-1, 1] (faces) or the reference square [-1, 1]^2 (cells).
"""
from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.polynomial import legendre as L
from numpy.polynomial.legendre import leggauss

FACE_BASES = ("legendre", "lagrange")


# -------------------------------------------------------------------------
# Quadrature
# -------------------------------------------------------------------------
def gauss_legendre(n_points: int):
    if n_points < 1:
        raise ValueError(n_points)
    return leggauss(n_points)  # (points, weights)


@lru_cache(maxsize=None)
def quad_rule(n_points: int):
    """Tensor Gauss rule on [-1,1]^2; point k = (xi[i], eta[j]) with k = i + n*j."""
    x, w = gauss_legendre(n_points)
    xi = np.tile(x, n_points)
    eta = np.repeat(x, n_points)
    wts = np.tile(w, n_points) * np.repeat(w, n_points)
    for a in (xi, eta, wts):
        a.setflags(write=False)
    return xi, eta, wts


@lru_cache(maxsize=None)
def gauss_lobatto_points(n_points: int) -> np.ndarray:
    """Gauss-Lobatto-Legendre nodes: the end points and the roots of P'_{n-1}."""
    if n_points < 2:
        raise ValueError("Gauss-Lobatto rules need at least two points")
    interior = L.Legendre.basis(n_points - 1).deriv().roots()
    pts = np.concatenate(([-1.0], np.sort(interior.real), [1.0]))
    pts.setflags(write=False)
    return pts


# -------------------------------------------------------------------------
# 1-D bases
# -------------------------------------------------------------------------
def legendre_1d(order: int, x: np.ndarray):
    """Values and derivatives of P_0..P_order at ``x``; arrays of shape (order+1, len(x))."""
    x = np.asarray(x, dtype=float)
    vals = np.empty((order + 1, x.size))
    ders = np.empty((order + 1, x.size))
    for k in range(order + 1):
        c = np.zeros(k + 1)
        c[k] = 1.0
        vals[k] = L.legval(x, c)
        ders[k] = L.legval(x, L.legder(c)) if k else 0.0
    return vals, ders


def lagrange_1d(nodes: np.ndarray, x: np.ndarray):
    """Lagrange polynomials on ``nodes`` and their derivatives at ``x``."""
    nodes = np.asarray(nodes, dtype=float)
    x = np.asarray(x, dtype=float)
    n = nodes.size
    vals = np.ones((n, x.size))
    ders = np.zeros((n, x.size))
    for a in range(n):
        others = np.delete(nodes, a)
        denom = np.prod(nodes[a] - others)
        vals[a] = np.prod(x[None, :] - others[:, None], axis=0) / denom
        for m in range(others.size):
            rest = np.delete(others, m)
            ders[a] += np.prod(x[None, :] - rest[:, None], axis=0) / denom
    return vals, ders


class FaceBasis:
    """Trace space of one face: modal Legendre or nodal Lagrange at GLL points."""

    def __init__(self, kind: str, order: int):
        if kind not in FACE_BASES:
            raise ValueError(f"Unknown face basis '{kind}'. Choose from {FACE_BASES}.")
        if order < 0:
            raise ValueError(order)
        self.kind = kind
        self.order = order
        if kind == "lagrange":
            self.nodes = gauss_lobatto_points(order + 1) if order > 0 else np.zeros(1)
        else:
            self.nodes = None

    @property
    def n_dofs(self) -> int:
        return self.order + 1

    def __call__(self, s: np.ndarray) -> np.ndarray:
        if self.kind == "legendre":
            return legendre_1d(self.order, s)[0]
        return lagrange_1d(self.nodes, s)[0]

    def __repr__(self):
        return f"FaceBasis({self.kind!r}, order={self.order})"


@lru_cache(maxsize=None)
def face_tabulation(kind: str, order: int, n_points: int):
    """(points, weights, values) of a :class:`FaceBasis` on a Gauss rule."""
    s, w = gauss_legendre(n_points)
    vals = FaceBasis(kind, order)(s)
    for a in (s, w, vals):
        a.setflags(write=False)
    return s, w, vals


# -------------------------------------------------------------------------
# Tensor-product volume basis Q_p
# -------------------------------------------------------------------------
class VolumeBasis:
    """Tensor Legendre basis phi_a(xi, eta) = P_i(xi) P_j(eta), a = i + (p+1)*j."""

    def __init__(self, order: int):
        if order < 0:
            raise ValueError(order)
        self.order = order

    @property
    def n_dofs(self) -> int:
        return (self.order + 1) ** 2

    def tabulate(self, xi: np.ndarray, eta: np.ndarray):
        """Values, d/dxi and d/deta, each of shape (n_dofs, n_points)."""
        px, dpx = legendre_1d(self.order, xi)
        py, dpy = legendre_1d(self.order, eta)
        # a = i + (p+1)*j  ->  index [j, i]
        vals = (py[:, None, :] * px[None, :, :]).reshape(self.n_dofs, -1)
        dxi = (py[:, None, :] * dpx[None, :, :]).reshape(self.n_dofs, -1)
        deta = (dpy[:, None, :] * px[None, :, :]).reshape(self.n_dofs, -1)
        return vals, dxi, deta

    def __repr__(self):
        return f"VolumeBasis(order={self.order})"


@lru_cache(maxsize=None)
def volume_tabulation(order: int, n_points: int):
    """(xi, eta, weights, values, d/dxi, d/deta) on the tensor Gauss rule."""
    xi, eta, w = quad_rule(n_points)
    vals, dxi, deta = VolumeBasis(order).tabulate(xi, eta)
    for a in (vals, dxi, deta):
        a.setflags(write=False)
    return xi, eta, w, vals, dxi, deta
