"""Custom GTSAM factors of the tag graph.

Each factor is a ``gtsam.CustomFactor`` whose error function evaluates the
measurement model and, when GTSAM asks for them, fills in analytic
Jacobians built from the chain rules in ``measurements``:

- reprojection:     uv = K(distort(project(T_w_c^-1 * T_w_b * T_b_o * X_o)))
- corner distance:  d  = |X_w_1 - X_w_2|
- projected length: l  = X_w . n

The error is prediction minus measurement, like GTSAM's ExpressionFactor.
"""
import logging
from functools import partial
from typing import List, Optional, Sequence, Tuple

import numpy as np
import gtsam

from .camera_models import DistortionModel, uncalibrate
from .keys import decode_key
from .measurements import (CheiralityError, corner_in_world, distance, proj,
                           project, transform_to)

logger = logging.getLogger("tagslam.factors")

REPROJECTION = "reprojection"
DISTANCE = "distance"
PROJECTED_LENGTH = "projected_length"


def reprojection_error(model: DistortionModel, X_o: np.ndarray, measured: np.ndarray,
                       T_w_c: gtsam.Pose3, T_w_b: gtsam.Pose3, T_b_o: gtsam.Pose3
                       ) -> Tuple[np.ndarray, List[np.ndarray]]:
    """Pixel error of one tag corner and its Jacobians w.r.t. (T_w_c, T_w_b, T_b_o)."""
    X_w, H_wb, H_bo = corner_in_world(T_w_b, T_b_o, X_o)
    X_c, H_wc, R_cw = transform_to(T_w_c, X_w)
    xn, H_proj = project(X_c)
    uv, H_cal = uncalibrate(model, xn)
    H_xc = H_cal @ H_proj                # 2x3, d(uv)/d(X_c)
    H_xw = H_xc @ R_cw                   # 2x3, d(uv)/d(X_w)
    return uv - measured, [H_xc @ H_wc, H_xw @ H_wb, H_xw @ H_bo]


def distance_error(X_o1: np.ndarray, X_o2: np.ndarray, measured: float,
                   T_w_b1: gtsam.Pose3, T_b1_o: gtsam.Pose3,
                   T_w_b2: gtsam.Pose3, T_b2_o: gtsam.Pose3
                   ) -> Tuple[np.ndarray, List[np.ndarray]]:
    """Distance error and Jacobians w.r.t. (T_w_b1, T_b1_o, T_w_b2, T_b2_o)."""
    X_w1, H_wb1, H_bo1 = corner_in_world(T_w_b1, T_b1_o, X_o1)
    X_w2, H_wb2, H_bo2 = corner_in_world(T_w_b2, T_b2_o, X_o2)
    r, H1, H2 = distance(X_w1, X_w2)
    return (np.array([r - measured]),
            [H1 @ H_wb1, H1 @ H_bo1, H2 @ H_wb2, H2 @ H_bo2])


def projected_length_error(X_o: np.ndarray, direction: np.ndarray, measured: float,
                           T_w_b: gtsam.Pose3, T_b_o: gtsam.Pose3
                           ) -> Tuple[np.ndarray, List[np.ndarray]]:
    """Projected length error and Jacobians w.r.t. (T_w_b, T_b_o)."""
    X_w, H_wb, H_bo = corner_in_world(T_w_b, T_b_o, X_o)
    r, Hp, _ = proj(X_w, direction)
    return np.array([r - measured]), [Hp @ H_wb, Hp @ H_bo]


def _assign(this: gtsam.CustomFactor, term_keys: Sequence[int], terms: List[np.ndarray],
            jacobians: Optional[List[np.ndarray]]) -> None:
    """Sum per-term Jacobians into the factor's (unique) key slots."""
    if jacobians is None:
        return
    keys = list(this.keys())
    blocks = [np.zeros_like(terms[0]) for _ in keys]
    for k, H in zip(term_keys, terms):
        blocks[keys.index(k)] += H
    for i, H in enumerate(blocks):
        jacobians[i] = H


def _unique(keys: Sequence[int]) -> List[int]:
    out: List[int] = []
    for k in keys:
        if k not in out:
            out.append(k)
    return out


def _reprojection_fn(model, X_o, measured, term_keys, this, values, jacobians):
    poses = [values.atPose3(k) for k in term_keys]
    try:
        e, H = reprojection_error(model, X_o, measured, *poses)
    except CheiralityError:
        # same policy as GenericProjectionFactor with throwCheirality=false
        logger.debug("cheirality violation on %s", [decode_key(k).label() for k in term_keys])
        if jacobians is not None:
            for i in range(len(term_keys)):
                jacobians[i] = np.zeros((2, 6))
        return np.full(2, 2.0 * model.fx)
    _assign(this, term_keys, H, jacobians)
    return e


def _distance_fn(X_o1, X_o2, measured, term_keys, this, values, jacobians):
    poses = [values.atPose3(k) for k in term_keys]
    e, H = distance_error(X_o1, X_o2, measured, *poses)
    _assign(this, term_keys, H, jacobians)
    return e


def _projected_length_fn(X_o, direction, measured, term_keys, this, values, jacobians):
    poses = [values.atPose3(k) for k in term_keys]
    e, H = projected_length_error(X_o, direction, measured, *poses)
    _assign(this, term_keys, H, jacobians)
    return e


def make_reprojection_factor(cam_key: int, body_key: int, tag_key: int,
                             model: DistortionModel, X_o: np.ndarray,
                             measured: np.ndarray, noise) -> gtsam.CustomFactor:
    term_keys = [cam_key, body_key, tag_key]
    fn = partial(_reprojection_fn, model, np.asarray(X_o, dtype=float),
                 np.asarray(measured, dtype=float), term_keys)
    return gtsam.CustomFactor(noise, term_keys, fn)


def make_distance_factor(T_w_b1_key: int, T_b1_o_key: int, X_o1: np.ndarray,
                         T_w_b2_key: int, T_b2_o_key: int, X_o2: np.ndarray,
                         measured: float, noise) -> gtsam.CustomFactor:
    term_keys = [T_w_b1_key, T_b1_o_key, T_w_b2_key, T_b2_o_key]
    fn = partial(_distance_fn, np.asarray(X_o1, dtype=float), np.asarray(X_o2, dtype=float),
                 float(measured), term_keys)
    return gtsam.CustomFactor(noise, _unique(term_keys), fn)


def make_projected_length_factor(T_w_b_key: int, T_b_o_key: int, X_o: np.ndarray,
                                 direction: np.ndarray, measured: float,
                                 noise) -> gtsam.CustomFactor:
    term_keys = [T_w_b_key, T_b_o_key]
    fn = partial(_projected_length_fn, np.asarray(X_o, dtype=float),
                 np.asarray(direction, dtype=float), float(measured), term_keys)
    return gtsam.CustomFactor(noise, term_keys, fn)


def resection_error(model: DistortionModel, X: np.ndarray, measured: np.ndarray,
                    T: gtsam.Pose3) -> Tuple[np.ndarray, List[np.ndarray]]:
    """Pixel error of a fixed point X seen from camera pose T (camera-to-X-frame)."""
    X_c, H_T, _ = transform_to(T, X)
    xn, H_proj = project(X_c)
    uv, H_cal = uncalibrate(model, xn)
    return uv - measured, [H_cal @ H_proj @ H_T]


def _resection_fn(model, X, measured, this, values, jacobians):
    key = this.keys()[0]
    try:
        e, H = resection_error(model, X, measured, values.atPose3(key))
    except CheiralityError:
        if jacobians is not None:
            jacobians[0] = np.zeros((2, 6))
        return np.full(2, 2.0 * model.fx)
    if jacobians is not None:
        jacobians[0] = H[0]
    return e


def make_resection_factor(pose_key: int, model: DistortionModel, X: np.ndarray,
                          measured: np.ndarray, noise) -> gtsam.CustomFactor:
    """Single-pose factor used to bootstrap camera and tag pose guesses."""
    fn = partial(_resection_fn, model, np.asarray(X, dtype=float),
                 np.asarray(measured, dtype=float))
    return gtsam.CustomFactor(noise, [pose_key], fn)
