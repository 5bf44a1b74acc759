"""Camera distortion models.

Exactly two models are supported and a camera carries exactly one of them:

- RadialTangential: plumb-bob model, same as gtsam.Cal3DS2
  (k1, k2 radial, p1, p2 tangential)
- Equidistant: fisheye model, same as gtsam.Cal3Fisheye
  (theta_d = theta * (1 + k1 theta^2 + k2 theta^4 + k3 theta^6 + k4 theta^8))

Both map a point on the normalized image plane to pixels and return the
2x2 Jacobian of that map, which the reprojection factor chains with the
projection and rigid transform Jacobians.
"""
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from .errors import ConfigurationError

_SMALL_RADIUS = 1e-10


@dataclass(frozen=True)
class RadialTangential:
    fx: float
    fy: float
    u0: float
    v0: float
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    skew: float = 0.0

    def coefficients(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.p1, self.p2], dtype=float)


@dataclass(frozen=True)
class Equidistant:
    fx: float
    fy: float
    u0: float
    v0: float
    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0
    skew: float = 0.0

    def coefficients(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.k3, self.k4], dtype=float)


DistortionModel = Union[RadialTangential, Equidistant]


def make_model(kind: str, intrinsics, coefficients=None) -> DistortionModel:
    """Build a model from config values.

    intrinsics: [fx, fy, u0, v0]; coefficients: up to 4 distortion terms.
    """
    if len(intrinsics) != 4:
        raise ConfigurationError(f"intrinsics must be [fx, fy, u0, v0], got {list(intrinsics)}")
    fx, fy, u0, v0 = (float(v) for v in intrinsics)
    if fx <= 0 or fy <= 0:
        raise ConfigurationError(f"focal lengths must be positive: fx={fx} fy={fy}")
    coeffs = [float(c) for c in (coefficients or [])]
    if len(coeffs) > 4:
        raise ConfigurationError(f"at most 4 distortion coefficients, got {len(coeffs)}")
    coeffs += [0.0] * (4 - len(coeffs))
    kind = (kind or "").lower()
    if kind in ("radtan", "radial_tangential", "plumb_bob"):
        return RadialTangential(fx, fy, u0, v0, *coeffs)
    if kind in ("equidistant", "equi", "fisheye"):
        return Equidistant(fx, fy, u0, v0, *coeffs)
    raise ConfigurationError(f"Unsupported distortion model: {kind}")


def _apply_k(model: DistortionModel, pd: np.ndarray) -> np.ndarray:
    return np.array([model.fx * pd[0] + model.skew * pd[1] + model.u0,
                     model.fy * pd[1] + model.v0])


def _k_matrix(model: DistortionModel) -> np.ndarray:
    return np.array([[model.fx, model.skew],
                     [0.0, model.fy]])


def _distort_radtan(m: RadialTangential, xn: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    x, y = float(xn[0]), float(xn[1])
    xx, yy, xy = x * x, y * y, x * y
    r2 = xx + yy
    g = 1.0 + m.k1 * r2 + m.k2 * r2 * r2
    dg = m.k1 + 2.0 * m.k2 * r2          # dg / d(r2)
    pd = np.array([g * x + 2.0 * m.p1 * xy + m.p2 * (r2 + 2.0 * xx),
                   g * y + m.p1 * (r2 + 2.0 * yy) + 2.0 * m.p2 * xy])
    H = np.array([
        [g + 2.0 * xx * dg + 2.0 * m.p1 * y + 6.0 * m.p2 * x,
         2.0 * xy * dg + 2.0 * m.p1 * x + 2.0 * m.p2 * y],
        [2.0 * xy * dg + 2.0 * m.p1 * x + 2.0 * m.p2 * y,
         g + 2.0 * yy * dg + 6.0 * m.p1 * y + 2.0 * m.p2 * x],
    ])
    return pd, H


def _distort_equidistant(m: Equidistant, xn: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    x, y = float(xn[0]), float(xn[1])
    r2 = x * x + y * y
    r = np.sqrt(r2)
    if r < _SMALL_RADIUS:
        return np.array([x, y]), np.eye(2)
    th = np.arctan(r)
    t2 = th * th
    t4 = t2 * t2
    t6 = t4 * t2
    t8 = t4 * t4
    thd = th * (1.0 + m.k1 * t2 + m.k2 * t4 + m.k3 * t6 + m.k4 * t8)
    dthd_dth = 1.0 + 3.0 * m.k1 * t2 + 5.0 * m.k2 * t4 + 7.0 * m.k3 * t6 + 9.0 * m.k4 * t8
    dth_dr = 1.0 / (1.0 + r2)
    scale = thd / r
    dscale_dr = (dthd_dth * dth_dr * r - thd) / r2
    p = np.array([x, y])
    # d(scale * p)/dp = scale * I + p (dscale/dr) (p / r)^T
    H = scale * np.eye(2) + np.outer(p, p) * (dscale_dr / r)
    return scale * p, H


def uncalibrate(model: DistortionModel, xn: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Normalized image point -> pixel, with the 2x2 Jacobian w.r.t. xn."""
    if isinstance(model, RadialTangential):
        pd, H = _distort_radtan(model, xn)
    elif isinstance(model, Equidistant):
        pd, H = _distort_equidistant(model, xn)
    else:
        raise TypeError(f"Unknown distortion model {type(model).__name__}")
    return _apply_k(model, pd), _k_matrix(model) @ H


def calibrate(model: DistortionModel, uv: np.ndarray, iterations: int = 20,
              tol: float = 1e-12) -> np.ndarray:
    """Pixel -> normalized image point by Gauss-Newton on uncalibrate."""
    uv = np.asarray(uv, dtype=float)
    K = _k_matrix(model)
    xn = np.linalg.solve(K, uv - np.array([model.u0, model.v0]))
    for _ in range(iterations):
        pred, H = uncalibrate(model, xn)
        step = np.linalg.solve(H, uv - pred)
        xn = xn + step
        if float(step @ step) < tol:
            break
    return xn
