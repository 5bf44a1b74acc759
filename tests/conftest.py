from types import SimpleNamespace

import numpy as np
import pytest
import gtsam

from tagslam.camera_models import RadialTangential, uncalibrate
from tagslam.measurements import project
from tagslam.models import Camera, PoseEstimate, RigidBody, Tag


# camera one meter in front of the tag plane, looking along +z
T_W_C = gtsam.Pose3(gtsam.Rot3(), gtsam.Point3(0.0, 0.0, -1.0))
T_B_O = gtsam.Pose3(gtsam.Rot3.Rz(0.1), gtsam.Point3(0.02, -0.01, 0.0))


def image_corners(model, T_w_c, T_w_b, T_b_o, tag):
    out = []
    for i in range(4):
        X_w = T_w_b.transformFrom(T_b_o.transformFrom(tag.object_corner(i)))
        xn, _ = project(T_w_c.transformTo(X_w))
        uv, _ = uncalibrate(model, xn)
        out.append(uv)
    return np.array(out)


@pytest.fixture
def pinhole():
    return RadialTangential(fx=600.0, fy=600.0, u0=320.0, v0=240.0)


@pytest.fixture
def corners_of():
    return image_corners


@pytest.fixture
def scene(pinhole):
    """Static camera, static world body at the origin, one known 0.1 m tag."""
    tag = Tag(id=0, size=0.1,
              pose_estimate=PoseEstimate.of(T_B_O, covariance=np.zeros((6, 6))),
              has_known_pose=True)
    body = RigidBody(name="world", index=0, is_static=True,
                     pose_estimate=PoseEstimate.of(gtsam.Pose3(), covariance=np.zeros((6, 6))),
                     has_pose_prior=True, is_default=True, tags={0: tag})
    camera = Camera(name="cam0", index=0, is_static=True, model=pinhole)
    tag.image_corners = image_corners(pinhole, T_W_C, body.pose_estimate.pose, T_B_O, tag)
    return SimpleNamespace(tag=tag, body=body, camera=camera, T_w_c=T_W_C, T_b_o=T_B_O)
