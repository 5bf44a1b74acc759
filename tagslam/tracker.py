"""Frame driver: turns synchronized tag detections into graph updates.

For each frame and camera the driver
  1. splits the detected tags into known (already in the graph) and new,
  2. estimates the camera pose from known tags (or reuses the graph's pose
     for a static camera),
  3. estimates dynamic body poses from the camera pose and a known tag,
  4. guesses relative poses for new tags and adds them,
  5. feeds the observations to GraphState.
Afterwards it retries the pending distance/position measurements, runs the
batch optimization and refreshes every pose estimate from the graph.
"""
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np
import gtsam

from .camera_models import calibrate
from .factors import make_resection_factor
from .graph import GraphState
from .keys import camera_key, tag_key
from .loader import FrameDetections, TagDetection, TagSlamConfig
from .models import Camera, PoseEstimate, RigidBody, Tag
from .optimize import OptimizationRunner
from .robust import isotropic

if TYPE_CHECKING:
    from tagslam_common.kpi_logging import KPILogger

logger = logging.getLogger("tagslam.tracker")

_RESECTION_KEY = gtsam.symbol('r', 0)


@dataclass
class FrameResult:
    """Poses published for one frame (the broadcaster's input)."""
    frame: int
    stamp: float
    cameras: Dict[str, PoseEstimate] = field(default_factory=dict)
    bodies: Dict[str, PoseEstimate] = field(default_factory=dict)
    tags: Dict[int, PoseEstimate] = field(default_factory=dict)   # T_w_o
    error: float = 0.0
    iterations: int = 0

    def pose_count(self) -> int:
        return sum(1 for pe in list(self.cameras.values()) + list(self.bodies.values())
                   + list(self.tags.values()) if pe.is_valid())


def pose_from_homography(object_xy: np.ndarray, normalized: np.ndarray) -> Optional[gtsam.Pose3]:
    """T_c_o of a planar target from >= 4 point pairs on the z = 0 plane.

    Direct linear transform for H ~ [r1 r2 t], then the closest rotation.
    Returns None for degenerate input.
    """
    rows = []
    for (X, Y), (u, v) in zip(object_xy, normalized):
        rows.append([X, Y, 1.0, 0.0, 0.0, 0.0, -u * X, -u * Y, -u])
        rows.append([0.0, 0.0, 0.0, X, Y, 1.0, -v * X, -v * Y, -v])
    A = np.asarray(rows, dtype=float)
    if A.shape[0] < 8:
        return None
    _, S, Vt = np.linalg.svd(A)
    H = Vt[-1].reshape(3, 3)
    n1, n2 = np.linalg.norm(H[:, 0]), np.linalg.norm(H[:, 1])
    if n1 < 1e-12 or n2 < 1e-12:
        return None
    H = H * (2.0 / (n1 + n2))
    if H[2, 2] < 0:
        H = -H
    r1, r2, t = H[:, 0], H[:, 1], H[:, 2]
    R = np.column_stack([r1, r2, np.cross(r1, r2)])
    U, _, Vt = np.linalg.svd(R)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt
    return gtsam.Pose3(gtsam.Rot3(R), gtsam.Point3(*t))


class TagSlam:
    """Runs GraphState over a stream of synchronized detection frames."""

    def __init__(self, config: TagSlamConfig,
                 graph: Optional[GraphState] = None,
                 kpi: Optional["KPILogger"] = None,
                 compute_marginals: Optional[bool] = None):
        self.config = config
        self.kpi = kpi
        self.graph = graph or GraphState(pixel_noise=config.pixel_noise, kpi=kpi)
        self.compute_marginals = config.compute_marginals if compute_marginals is None \
            else compute_marginals
        self.cameras: Dict[str, Camera] = {c.name: c for c in config.cameras}
        self.bodies: List[RigidBody] = list(config.bodies)
        self._owner: Dict[int, RigidBody] = {}
        for body in self.bodies:
            for tag_id in body.tags:
                self._owner[tag_id] = body
        self._default_body = next((b for b in self.bodies if b.is_default), None)
        self._pending_distance = list(config.distance_measurements)
        self._pending_position = list(config.position_measurements)
        self._resection_runner = OptimizationRunner(max_iterations=50)
        self._last_optimized_revision = -1
        self.frame_num = 0
        self._initialized = False

    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Insert every configured tag with a known pose."""
        if self._initialized:
            return
        for body in self.bodies:
            known = [t for t in body.tags.values() if t.has_known_pose]
            if known:
                self.graph.add_tags(body, known)
        self._initialized = True

    def owner_of(self, tag_id: int) -> Optional[RigidBody]:
        return self._owner.get(tag_id, self._default_body)

    def _registered_tag(self, tag_id: int) -> Optional[Tag]:
        body = self._owner.get(tag_id)
        if body is None:
            return None
        return body.tags.get(tag_id)

    def _tag_size(self, tag_id: int) -> float:
        return self.config.tag_sizes.get(tag_id, self.config.default_tag_size)

    def _observation(self, det: TagDetection) -> Tag:
        """Per-frame copy of the tag carrying this frame's measured corners."""
        tag = self._registered_tag(det.id)
        if tag is None:
            return Tag(id=det.id, size=self._tag_size(det.id), image_corners=det.corners)
        return dataclasses.replace(tag, image_corners=det.corners)

    # ------------------------------------------------------------------
    # initial guesses
    # ------------------------------------------------------------------
    def _refine(self, camera: Camera, points: np.ndarray, pixels: np.ndarray,
                initial: gtsam.Pose3) -> Tuple[gtsam.Pose3, float]:
        """LM refinement of a pose whose inverse maps ``points`` into the camera."""
        graph = gtsam.NonlinearFactorGraph()
        noise = isotropic(2, 1.0)
        for X, uv in zip(points, pixels):
            graph.add(make_resection_factor(_RESECTION_KEY, camera.model, X, uv, noise))
        values = gtsam.Values()
        values.insert(_RESECTION_KEY, initial)
        result = self._resection_runner.run(graph, values, len(points))
        return result.atPose3(_RESECTION_KEY), self._resection_runner.error

    def estimate_tag_in_camera(self, camera: Camera, tag: Tag) -> Optional[gtsam.Pose3]:
        """T_c_o from the four measured corners of a single tag."""
        corners = tag.object_corners()
        normalized = np.array([calibrate(camera.model, uv) for uv in tag.image_corners])
        T_c_o = pose_from_homography(corners[:, :2], normalized)
        if T_c_o is None:
            logger.warning("degenerate corners for tag %d in %s", tag.id, camera.name)
            return None
        T_o_c, err = self._refine(camera, corners, tag.image_corners, T_c_o.inverse())
        logger.debug("tag %d in %s: initial pose error %.4g", tag.id, camera.name, err)
        return T_o_c.inverse()

    def _world_pose_of(self, tag: Tag) -> Optional[gtsam.Pose3]:
        body = self.owner_of(tag.id)
        if body is None or not body.pose_estimate.is_valid() or not tag.pose_estimate.is_valid():
            return None
        return body.pose_estimate.pose.compose(tag.pose_estimate.pose)

    def estimate_camera_pose(self, camera: Camera, known: Sequence[Tag],
                             frame: int) -> PoseEstimate:
        if camera.is_static:
            pe = self.graph.get_camera_pose(camera, frame)
            if pe.is_valid():
                return pe
        anchored = [(t, T_w_o) for t in known
                    for T_w_o in [self._world_pose_of(t)] if T_w_o is not None]
        if not anchored:
            return PoseEstimate()
        seed = None
        for tag, T_w_o in anchored:
            T_c_o = self.estimate_tag_in_camera(camera, tag)
            if T_c_o is not None:
                seed = T_w_o.compose(T_c_o.inverse())
                break
        if seed is None:
            return PoseEstimate()
        points, pixels = [], []
        for tag, T_w_o in anchored:
            for i in range(4):
                points.append(T_w_o.transformFrom(tag.object_corner(i)))
                pixels.append(tag.image_corners[i])
        T_w_c, err = self._refine(camera, np.asarray(points), np.asarray(pixels), seed)
        return PoseEstimate.of(T_w_c, err, self._resection_runner.iterations)

    def _estimate_body_pose(self, camera: Camera, body: RigidBody,
                            tags: Sequence[Tag]) -> PoseEstimate:
        """T_w_b = T_w_c * T_c_o * T_b_o^-1 from the first usable known tag."""
        for tag in tags:
            if not tag.pose_estimate.is_valid():
                continue
            T_c_o = self.estimate_tag_in_camera(camera, tag)
            if T_c_o is None:
                continue
            T_w_b = camera.pose_estimate.pose.compose(T_c_o).compose(tag.pose_estimate.pose.inverse())
            return PoseEstimate.of(T_w_b)
        return PoseEstimate()

    # ------------------------------------------------------------------
    # per frame
    # ------------------------------------------------------------------
    def _begin_frame(self, frame: int) -> None:
        for camera in self.cameras.values():
            if not camera.is_static:
                camera.pose_estimate = PoseEstimate()
        for body in self.bodies:
            if not body.is_static:
                body.pose_estimate = self.graph.get_body_pose(body, frame)

    def _process_camera(self, camera: Camera, dets: List[TagDetection], frame: int) -> int:
        observations: List[Tag] = []
        for det in dets:
            if self.owner_of(det.id) is None:
                logger.warning("tag %d is not owned by any body; ignored", det.id)
                continue
            observations.append(self._observation(det))
        known = [t for t in observations if self.graph.has_key(tag_key(t.id))]
        new = [t for t in observations if not self.graph.has_key(tag_key(t.id))]

        camera.pose_estimate = self.estimate_camera_pose(camera, known, frame)
        if not camera.pose_estimate.is_valid():
            logger.info("no pose for camera %s in frame %d yet", camera.name, frame)
            return 0

        by_body: Dict[str, List[Tag]] = {}
        for tag in known:
            by_body.setdefault(self.owner_of(tag.id).name, []).append(tag)
        for body in self.bodies:
            if body.pose_estimate.is_valid() or body.name not in by_body:
                continue
            body.pose_estimate = self._estimate_body_pose(camera, body, by_body[body.name])

        for tag in new:
            body = self.owner_of(tag.id)
            if not body.pose_estimate.is_valid():
                logger.debug("body %s has no pose; tag %d must wait", body.name, tag.id)
                continue
            T_c_o = self.estimate_tag_in_camera(camera, tag)
            if T_c_o is None:
                continue
            T_b_o = body.pose_estimate.pose.inverse() \
                .compose(camera.pose_estimate.pose).compose(T_c_o)
            tag.pose_estimate = PoseEstimate.of(T_b_o)
            tag.parent_index = body.index
            if self.graph.add_tags(body, [tag]):
                registered = body.tags.setdefault(tag.id, tag)
                registered.pose_estimate = tag.pose_estimate
                registered.parent_index = body.index
                self._owner.setdefault(tag.id, body)
            by_body.setdefault(body.name, []).append(tag)

        added = 0
        for body in self.bodies:
            tags = by_body.get(body.name)
            if tags:
                added += self.graph.observed_tags(camera, body, tags, frame)
        return added

    def _try_measurements(self) -> None:
        still: list = []
        for dm in self._pending_distance:
            body1, body2 = self._owner.get(dm.tag1), self._owner.get(dm.tag2)
            tag1, tag2 = self._registered_tag(dm.tag1), self._registered_tag(dm.tag2)
            if None in (body1, body2, tag1, tag2):
                still.append(dm)
                continue
            if not (body1.is_static and body2.is_static):
                logger.error("dropping distance measurement %s: bodies must be static", dm.name)
                continue
            if dm.tag1 == dm.tag2 and dm.corner1 == dm.corner2:
                logger.error("dropping distance measurement %s: relates a corner to itself", dm.name)
                continue
            if not self.graph.add_distance_measurement(body1, body2, tag1, tag2, dm):
                still.append(dm)
        self._pending_distance = still
        still = []
        for m in self._pending_position:
            body, tag = self._owner.get(m.tag), self._registered_tag(m.tag)
            if body is None or tag is None:
                still.append(m)
                continue
            if not body.is_static:
                logger.error("dropping position measurement %s: body must be static", m.name)
                continue
            if not self.graph.add_position_measurement(body, tag, m):
                still.append(m)
        self._pending_position = still

    def _refresh_estimates(self, frame: int) -> None:
        """Copy solved poses back onto cameras, bodies and tags."""
        for camera in self.cameras.values():
            pe = self.graph.get_camera_pose(camera, frame)
            if pe.is_valid():
                camera.pose_estimate = pe
        for body in self.bodies:
            pe = self.graph.get_body_pose(body, frame)
            if pe.is_valid():
                body.pose_estimate = pe
            for tag in body.tags.values():
                rel = self.graph.get_tag_rel_pose(body, tag.id)
                if rel.is_valid():
                    tag.pose_estimate = dataclasses.replace(
                        rel, covariance=tag.pose_estimate.covariance)

    def process(self, frame_dets: FrameDetections) -> FrameResult:
        self.initialize()
        frame = self.frame_num
        self._begin_frame(frame)
        added = 0
        for cam_name, dets in frame_dets.cameras.items():
            camera = self.cameras.get(cam_name)
            if camera is None:
                logger.warning("detections for unknown camera %s", cam_name)
                continue
            added += self._process_camera(camera, dets, frame)
        self._try_measurements()
        if self.kpi:
            self.kpi.frame_ingest(frame, frame_dets.stamp, reprojection_factors=added,
                                  factor_count=self.graph.num_factors())

        if self.graph.revision != self._last_optimized_revision and self.graph.num_factors() > 0:
            self.graph.optimize()
            if self.compute_marginals:
                try:
                    self.graph.compute_marginals()
                except RuntimeError as e:
                    logger.warning("marginals unavailable in frame %d: %s", frame, e)
            self._last_optimized_revision = self.graph.revision
        self._refresh_estimates(frame)

        result = self._collect(frame, frame_dets.stamp)
        if self.kpi:
            self.kpi.pose_broadcast(frame, pose_count=result.pose_count())
        self.frame_num += 1
        return result

    def _collect(self, frame: int, stamp: float) -> FrameResult:
        result = FrameResult(frame=frame, stamp=stamp,
                             error=self.graph.optimizer_error,
                             iterations=self.graph.optimizer_iterations)
        for camera in self.cameras.values():
            if self.graph.has_key(camera_key(camera.index, frame, camera.is_static)):
                result.cameras[camera.name] = self.graph.get_camera_pose(camera, frame)
        for body in self.bodies:
            pe = self.graph.get_body_pose(body, frame)
            if pe.is_valid():
                result.bodies[body.name] = pe
                for tag_id in body.tags:
                    tw = self.graph.get_tag_world_pose(body, tag_id, frame)
                    if tw.is_valid():
                        result.tags[tag_id] = tw
        return result

    def run(self, frames) -> List[FrameResult]:
        return [self.process(fr) for fr in frames]
