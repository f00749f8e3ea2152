# analytic.py
import sympy as sp
import numpy as np


x, y = sp.symbols("x y")


def _lambdify(expr):
    """numpy callable f(x, y) that always returns an array shaped like ``x``."""
    fn = sp.lambdify((x, y), expr, "numpy")

    def wrapped(X, Y):
        X = np.asarray(X, dtype=float)
        return np.broadcast_to(np.asarray(fn(X, np.asarray(Y, dtype=float)), dtype=float), X.shape).copy()
    return wrapped


class ManufacturedSolution:
    """
    Exact solution of the mixed diffusion problem built from a SymPy scalar u(x,y).

    With a constant conductivity kappa the flux is ``q = -kappa grad(u)`` and
    the source is ``f = div(q)``, so that ``grad(u) + q/kappa = 0`` and
    ``div(q) = f`` hold exactly.
    """

    def __init__(self, u_expr=None, kappa: float = 1.0):
        if u_expr is None:
            u_expr = sp.sin(sp.pi * x) * sp.sin(sp.pi * y) + x * y
        if kappa <= 0:
            raise ValueError("kappa must be positive")
        self.kappa = float(kappa)
        self.u_expr = sp.sympify(u_expr)
        self.q_expr = (-self.kappa * sp.diff(self.u_expr, x), -self.kappa * sp.diff(self.u_expr, y))
        self.f_expr = sp.simplify(sp.diff(self.q_expr[0], x) + sp.diff(self.q_expr[1], y))
        self._u = _lambdify(self.u_expr)
        self._qx = _lambdify(self.q_expr[0])
        self._qy = _lambdify(self.q_expr[1])
        self._f = _lambdify(self.f_expr)

    def u(self, X):
        """X : (n, 2) points -> (n,)"""
        X = np.asarray(X, dtype=float)
        return self._u(X[:, 0], X[:, 1])

    def q(self, X):
        """X : (n, 2) points -> (n, 2)"""
        X = np.asarray(X, dtype=float)
        return np.column_stack([self._qx(X[:, 0], X[:, 1]), self._qy(X[:, 0], X[:, 1])])

    def f(self, X):
        X = np.asarray(X, dtype=float)
        return self._f(X[:, 0], X[:, 1])

    def __repr__(self):
        return f"ManufacturedSolution(u={self.u_expr}, kappa={self.kappa})"
