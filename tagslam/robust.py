"""Noise models for tag priors, pixel observations and scalar measurements."""
from typing import Optional
import numpy as np
import gtsam

from .errors import ConfigurationError

# kernel name -> (constructor, default threshold in whitened pixels)
KERNELS = {
    "huber": (gtsam.noiseModel.mEstimator.Huber, 1.345),
    "cauchy": (gtsam.noiseModel.mEstimator.Cauchy, 1.0),
}


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Symmetric part of ``cov`` plus the first diagonal jitter in
    eps, 10 eps, ... 1e7 eps that admits a Cholesky factor.

    A pose known exactly (all-zero covariance) thus ends up with variance eps.
    """
    cov = np.asarray(cov, dtype=float)
    cov = 0.5 * (cov + cov.T)
    eye = np.eye(cov.shape[0])
    for scale in 10.0 ** np.arange(8):
        jittered = cov + eye * (eps * scale)
        try:
            np.linalg.cholesky(jittered)
        except np.linalg.LinAlgError:
            continue
        return jittered
    return jittered


def isotropic(dim: int, sigma: float):
    if sigma <= 0:
        raise ConfigurationError(f"noise sigma must be positive, got {sigma}")
    return gtsam.noiseModel.Isotropic.Sigma(dim, float(sigma))


def prior_noise(covariance: Optional[np.ndarray], what: str = "pose"):
    """Gaussian noise for a 6-DoF prior (known tag pose or static body prior).

    Covariance ordering is [rotation, translation], matching Pose3 tangent space.
    """
    if covariance is None:
        raise ConfigurationError(f"{what} has a prior but no noise")
    cov = np.asarray(covariance, dtype=float)
    if cov.shape != (6, 6):
        raise ConfigurationError(f"{what} prior covariance must be 6x6, got {cov.shape}")
    return gtsam.noiseModel.Gaussian.Covariance(np.ascontiguousarray(make_spd(cov)))


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap pixel noise in a Huber or Cauchy kernel; ``kind=None`` keeps it Gaussian."""
    if not kind:
        return base
    try:
        kernel, default_k = KERNELS[kind.lower()]
    except KeyError:
        raise ConfigurationError(f"unsupported robust kernel: {kind}") from None
    return gtsam.noiseModel.Robust.Create(kernel(default_k if k is None else k), base)
