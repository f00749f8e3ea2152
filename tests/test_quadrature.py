import numpy as np
import pytest

from pyhdg.fem.basis import (FaceBasis, VolumeBasis, gauss_lobatto_points, lagrange_1d, legendre_1d,
                             quad_rule)


def test_tensor_rule_integrates_polynomials():
    xi, eta, w = quad_rule(3)
    assert np.isclose(w.sum(), 4.0, rtol=1e-12)
    # ∫∫ xi^4 eta^2 over [-1,1]^2 = (2/5)(2/3)
    assert np.isclose(w @ (xi ** 4 * eta ** 2), 4.0 / 15.0, rtol=1e-12)


def test_lobatto_points():
    pts = gauss_lobatto_points(4)
    assert np.allclose(pts, [-1.0, -np.sqrt(1.0 / 5.0), np.sqrt(1.0 / 5.0), 1.0])


def test_lagrange_is_nodal_and_sums_to_one():
    nodes = gauss_lobatto_points(3)
    vals, ders = lagrange_1d(nodes, nodes)
    assert np.allclose(vals, np.eye(3))
    s = np.linspace(-1.0, 1.0, 7)
    vals, ders = lagrange_1d(nodes, s)
    assert np.allclose(vals.sum(axis=0), 1.0)
    assert np.allclose(ders.sum(axis=0), 0.0)


def test_legendre_values():
    vals, ders = legendre_1d(2, np.array([0.5]))
    assert np.allclose(vals[:, 0], [1.0, 0.5, 0.5 * (3 * 0.25 - 1.0)])
    assert np.allclose(ders[:, 0], [0.0, 1.0, 1.5])


def test_volume_basis_ordering():
    vals, dxi, deta = VolumeBasis(1).tabulate(np.array([0.5]), np.array([-0.25]))
    # a = i + 2 j : 1, xi, eta, xi*eta
    assert np.allclose(vals[:, 0], [1.0, 0.5, -0.25, -0.125])
    assert np.allclose(dxi[:, 0], [0.0, 1.0, 0.0, -0.25])
    assert np.allclose(deta[:, 0], [0.0, 0.0, 1.0, 0.5])


def test_unknown_face_basis():
    with pytest.raises(ValueError):
        FaceBasis("hermite", 1)
