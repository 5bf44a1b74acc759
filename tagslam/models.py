from dataclasses import dataclass, field
from typing import List, Optional, Dict, Union

import numpy as np
import gtsam

from .camera_models import DistortionModel
from .errors import ConfigurationError
from .keys import NUM_TAG_IDS, CORNERS_PER_TAG


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order (the loader converts xyzw input)."""
    w: float
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=float)


@dataclass
class Translation:
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


def pose_from(rot: Quaternion, trans: Translation) -> gtsam.Pose3:
    R = gtsam.Rot3.Quaternion(rot.w, rot.x, rot.y, rot.z)
    t = gtsam.Point3(trans.x, trans.y, trans.z)
    return gtsam.Pose3(R, t)


def is_6x6_cov(mat: np.ndarray) -> bool:
    return isinstance(mat, np.ndarray) and mat.shape == (6, 6)


def to_covariance(cov_list: Union[List[float], np.ndarray]) -> np.ndarray:
    """Convert a flat list (36) or nested list (6x6) to a 6x6 ndarray.

    Tangent ordering follows GTSAM: [rotation (3), translation (3)].
    """
    arr = np.asarray(cov_list, dtype=float)
    if arr.size == 36 and arr.ndim == 1:
        return arr.reshape(6, 6)
    if arr.size == 36 and arr.ndim == 2 and arr.shape == (6, 6):
        return arr
    raise ValueError(f"Expected 36 elements for a 6x6 covariance, got shape {arr.shape} size {arr.size}")


def covariance_from_sigmas(rot_sigma: float, trans_sigma: float) -> np.ndarray:
    sigmas = np.array([rot_sigma] * 3 + [trans_sigma] * 3, dtype=float)
    return np.diag(sigmas ** 2)


@dataclass
class PoseEstimate:
    """A pose together with how it was obtained.

    Queries hand these out instead of raising: an estimate built with the
    default constructor is invalid and its pose must not be used.
    """
    pose: gtsam.Pose3 = field(default_factory=gtsam.Pose3)
    error: float = 0.0
    iterations: int = 0
    covariance: Optional[np.ndarray] = None  # 6x6, [rot, trans]
    valid: bool = False

    @classmethod
    def of(cls, pose: gtsam.Pose3, error: float = 0.0, iterations: int = 0,
           covariance: Optional[np.ndarray] = None) -> "PoseEstimate":
        return cls(pose=pose, error=error, iterations=iterations,
                   covariance=covariance, valid=True)

    def is_valid(self) -> bool:
        return self.valid

    def has_covariance(self) -> bool:
        return self.covariance is not None


@dataclass
class DistanceMeasurement:
    """Measured distance between two tag corners (both on static bodies)."""
    name: str
    tag1: int
    corner1: int
    tag2: int
    corner2: int
    distance: float
    noise: float  # sigma [m]


@dataclass
class PositionMeasurement:
    """Measured length of a tag corner's world position along a direction."""
    name: str
    tag: int
    corner: int
    length: float
    direction: np.ndarray  # unit vector in world frame
    noise: float  # sigma [m]


@dataclass
class Tag:
    id: int
    size: float
    pose_estimate: PoseEstimate = field(default_factory=PoseEstimate)  # T_b_o
    has_known_pose: bool = False
    parent_index: int = -1
    image_corners: Optional[np.ndarray] = None  # 4x2 measured pixels

    def __post_init__(self):
        if not 0 <= self.id < NUM_TAG_IDS:
            raise ConfigurationError(f"tag id out of range [0, {NUM_TAG_IDS}): {self.id}")
        if self.size <= 0:
            raise ConfigurationError(f"tag {self.id} has non-positive size {self.size}")

    def object_corner(self, i: int) -> np.ndarray:
        """Corner i in tag coordinates (z = 0 plane, counter-clockwise)."""
        s = 0.5 * self.size
        return _UNIT_CORNERS[i % CORNERS_PER_TAG] * s

    def object_corners(self) -> np.ndarray:
        return _UNIT_CORNERS * (0.5 * self.size)


_UNIT_CORNERS = np.array([[-1.0, -1.0, 0.0],
                          [1.0, -1.0, 0.0],
                          [1.0, 1.0, 0.0],
                          [-1.0, 1.0, 0.0]])


@dataclass
class RigidBody:
    name: str
    index: int
    is_static: bool
    pose_estimate: PoseEstimate = field(default_factory=PoseEstimate)  # T_w_b
    has_pose_prior: bool = False
    is_default: bool = False
    tags: Dict[int, Tag] = field(default_factory=dict)

    def __post_init__(self):
        if self.has_pose_prior and not self.is_static:
            raise ConfigurationError(f"body {self.name}: pose prior only allowed on static bodies")


@dataclass
class Camera:
    name: str
    index: int
    is_static: bool
    model: DistortionModel
    pose_estimate: PoseEstimate = field(default_factory=PoseEstimate)  # T_w_c
