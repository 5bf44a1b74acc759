import numpy as np
import pytest
import gtsam

from tagslam.measurements import (CheiralityError, corner_in_world, distance, proj,
                                  project, transform_from, transform_to)

POSE = gtsam.Pose3(gtsam.Rot3.RzRyRx(0.2, -0.1, 0.3), gtsam.Point3(0.5, -0.2, 1.0))


def _pose_fd(f, pose, eps=1e-6):
    """Central differences of f under right perturbation pose * Exp(xi)."""
    cols = []
    for j in range(6):
        xi = np.zeros(6)
        xi[j] = eps
        plus = f(pose.compose(gtsam.Pose3.Expmap(xi)))
        minus = f(pose.compose(gtsam.Pose3.Expmap(-xi)))
        cols.append((np.atleast_1d(plus) - np.atleast_1d(minus)) / (2 * eps))
    return np.column_stack(cols)


def test_distance_value_and_jacobians():
    p1, p2 = np.array([1.0, 2.0, 3.0]), np.array([0.0, 2.0, 1.0])
    r, H1, H2 = distance(p1, p2)
    assert r == pytest.approx(np.sqrt(5.0))
    assert np.allclose(H1, (p1 - p2).reshape(1, 3) / r)
    assert np.allclose(H2, -H1)


def test_distance_singular_returns_zero_jacobians():
    p = np.array([0.3, 0.3, 0.3])
    r, H1, H2 = distance(p, p.copy())
    assert r == 0.0
    assert np.all(H1 == 0.0) and np.all(H2 == 0.0)


def test_proj_is_exact():
    p, n = np.array([1.0, -2.0, 0.5]), np.array([0.0, 0.6, 0.8])
    r, Hp, Hn = proj(p, n)
    assert r == pytest.approx(-0.8)
    assert np.allclose(Hp, n.reshape(1, 3))
    assert np.allclose(Hn, p.reshape(1, 3))


def test_transform_from_jacobian():
    p = np.array([0.1, 0.2, -0.3])
    q, H, R = transform_from(POSE, p)
    assert np.allclose(q, POSE.transformFrom(p))
    assert np.allclose(H, _pose_fd(lambda T: T.transformFrom(p), POSE), atol=1e-6)
    assert np.allclose(R, POSE.rotation().matrix())


def test_transform_to_jacobian():
    p = np.array([0.1, 0.2, -0.3])
    q, H, _ = transform_to(POSE, p)
    assert np.allclose(q, POSE.transformTo(p))
    assert np.allclose(H, _pose_fd(lambda T: T.transformTo(p), POSE), atol=1e-6)


def test_corner_in_world_jacobians():
    T_b_o = gtsam.Pose3(gtsam.Rot3.Rx(0.4), gtsam.Point3(0.0, 0.1, 0.2))
    X_o = np.array([0.05, -0.05, 0.0])
    X_w, H_wb, H_bo = corner_in_world(POSE, T_b_o, X_o)
    assert np.allclose(X_w, POSE.transformFrom(T_b_o.transformFrom(X_o)))
    assert np.allclose(H_wb, _pose_fd(lambda T: T.transformFrom(T_b_o.transformFrom(X_o)), POSE),
                       atol=1e-6)
    assert np.allclose(H_bo, _pose_fd(lambda T: POSE.transformFrom(T.transformFrom(X_o)), T_b_o),
                       atol=1e-6)


def test_project_and_cheirality():
    xn, H = project(np.array([0.2, -0.4, 2.0]))
    assert np.allclose(xn, [0.1, -0.2])
    assert H.shape == (2, 3)
    with pytest.raises(CheiralityError):
        project(np.array([0.0, 0.0, -1.0]))
