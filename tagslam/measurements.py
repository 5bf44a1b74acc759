"""Scalar measurement functions and rigid-transform chain rules.

Every function returns its value together with analytic Jacobians so that
the custom factors never fall back to numerical differentiation.

Pose Jacobians follow the GTSAM convention: a pose T is perturbed on the
right, T * Exp(xi), with tangent ordering xi = [omega (3), v (3)].
"""
import logging
from typing import Tuple

import numpy as np
import gtsam

logger = logging.getLogger("tagslam.measurements")

SINGULAR_DISTANCE = 1e-12


class CheiralityError(ValueError):
    """Raised when a point to be projected lies on or behind the image plane."""


def skew(v: np.ndarray) -> np.ndarray:
    return np.array([[0.0, -v[2], v[1]],
                     [v[2], 0.0, -v[0]],
                     [-v[1], v[0], 0.0]])


def distance(p1: np.ndarray, p2: np.ndarray) -> Tuple[float, np.ndarray, np.ndarray]:
    """Euclidean distance r = |p1 - p2| and its 1x3 Jacobians.

    H1 = (p1 - p2)^T / r, H2 = -H1. The derivative does not exist at
    p1 == p2; there (r <= SINGULAR_DISTANCE) r is 0 and both Jacobians are
    zero, so the point pair contributes no gradient at that linearization.
    """
    d = np.asarray(p1, dtype=float) - np.asarray(p2, dtype=float)
    r = float(np.sqrt(d @ d))
    if r <= SINGULAR_DISTANCE:
        logger.debug("distance() evaluated at coincident points; returning zero Jacobians")
        return 0.0, np.zeros((1, 3)), np.zeros((1, 3))
    H1 = (d / r).reshape(1, 3)
    return r, H1, -H1


def proj(p: np.ndarray, n: np.ndarray) -> Tuple[float, np.ndarray, np.ndarray]:
    """Dot product r = p . n with Jacobians Hp = n^T and Hn = p^T."""
    p = np.asarray(p, dtype=float)
    n = np.asarray(n, dtype=float)
    return float(p @ n), n.reshape(1, 3).copy(), p.reshape(1, 3).copy()


def transform_from(pose: gtsam.Pose3, p: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """q = R p + t, with Jacobians (3x6 w.r.t. pose, 3x3 w.r.t. p)."""
    R = pose.rotation().matrix()
    p = np.asarray(p, dtype=float)
    q = R @ p + np.asarray(pose.translation(), dtype=float)
    H_pose = np.hstack([-R @ skew(p), R])
    return q, H_pose, R


def transform_to(pose: gtsam.Pose3, p: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """q = R^T (p - t), with Jacobians (3x6 w.r.t. pose, 3x3 w.r.t. p)."""
    Rt = pose.rotation().matrix().T
    q = Rt @ (np.asarray(p, dtype=float) - np.asarray(pose.translation(), dtype=float))
    H_pose = np.hstack([skew(q), -np.eye(3)])
    return q, H_pose, Rt


def project(p: np.ndarray, min_depth: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    """Pinhole projection onto the normalized image plane (z = 1)."""
    x, y, z = (float(v) for v in p)
    if z <= min_depth:
        raise CheiralityError(f"point behind camera: z={z}")
    inv_z = 1.0 / z
    u, v = x * inv_z, y * inv_z
    H = np.array([[inv_z, 0.0, -u * inv_z],
                  [0.0, inv_z, -v * inv_z]])
    return np.array([u, v]), H


def corner_in_world(T_w_b: gtsam.Pose3, T_b_o: gtsam.Pose3, X_o: np.ndarray):
    """X_w = T_w_b * (T_b_o * X_o), with Jacobians w.r.t. both poses."""
    X_b, H_bo, _ = transform_from(T_b_o, X_o)
    X_w, H_wb, R_wb = transform_from(T_w_b, X_b)
    return X_w, H_wb, R_wb @ H_bo
