"""Graph state of the tag SLAM problem.

GraphState owns one gtsam.NonlinearFactorGraph and one gtsam.Values.
Both only grow during ingestion; optimize() swaps in the solved values and
leaves the factors untouched. Query methods are read-only and never raise,
not even for ids outside the key space: pose queries hand back an invalid
PoseEstimate, point queries a (point, found) pair.
"""
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple
import logging

import numpy as np
import gtsam

from .errors import ConfigurationError
from .factors import (REPROJECTION, DISTANCE, PROJECTED_LENGTH,
                      make_reprojection_factor, make_distance_factor,
                      make_projected_length_factor)
from .keys import (CORNERS_PER_TAG, tag_key, camera_key, body_key,
                   corner_key)
from .models import (Camera, DistanceMeasurement, PoseEstimate, PositionMeasurement,
                     RigidBody, Tag)
from .optimize import CovarianceEstimator, OptimizationRunner
from .robust import isotropic, prior_noise, robustify

logger = logging.getLogger("tagslam.graph")

PRIOR = "prior"


class GraphState:
    """Incrementally built factor graph plus the latest solved values.

    Callers must serialize access; nothing here is thread-safe.
    """

    def __init__(self,
                 pixel_noise: float = 1.0,
                 robust_kind: Optional[str] = None,
                 robust_k: Optional[float] = None,
                 max_iterations: int = 100,
                 kpi=None):
        self.graph = gtsam.NonlinearFactorGraph()
        self.values = gtsam.Values()
        self.robust_kind = robust_kind
        self.robust_k = robust_k
        self._pixel_noise = robustify(isotropic(2, pixel_noise), robust_kind, robust_k)
        self.counts: Counter = Counter({PRIOR: 0, REPROJECTION: 0, DISTANCE: 0,
                                        PROJECTED_LENGTH: 0, "skipped": 0})
        # bumped on every mutation; marginals remember the revision they saw
        self.revision = 0
        self._measurements_seen: Counter = Counter()
        self.runner = OptimizationRunner(max_iterations=max_iterations, kpi=kpi)
        self.covariance = CovarianceEstimator(kpi=kpi)

    def set_pixel_noise(self, num_pixels: float) -> None:
        """Noise for reprojection factors added from now on."""
        self._pixel_noise = robustify(isotropic(2, num_pixels), self.robust_kind, self.robust_k)

    # ------------------------------------------------------------------
    # mutation helpers
    # ------------------------------------------------------------------
    def _insert(self, key: int, pose: gtsam.Pose3) -> None:
        self.values.insert(key, pose)
        self.revision += 1

    def _add_factor(self, factor, kind: str) -> None:
        self.graph.add(factor)
        self.counts[kind] += 1
        self.revision += 1

    def has_key(self, key: int) -> bool:
        return self.values.exists(key)

    # ------------------------------------------------------------------
    # ingestion
    # ------------------------------------------------------------------
    def add_tags(self, body: RigidBody, tags: Iterable[Tag]) -> int:
        """Insert T_b_o for each new tag; pin it with a prior if its pose is known.

        A tag id that is already in the graph is rejected with an error log
        and leaves the graph as it was.
        """
        added = 0
        for tag in tags:
            T_b_o_key = tag_key(tag.id)
            if self.values.exists(T_b_o_key):
                logger.error("duplicate tag id inserted: %d (body %s)", tag.id, body.name)
                self.counts["skipped"] += 1
                continue
            pose = tag.pose_estimate.pose
            noise = prior_noise(tag.pose_estimate.covariance, f"tag {tag.id}") \
                if tag.has_known_pose else None
            self._insert(T_b_o_key, pose)
            if noise is not None:
                self._add_factor(gtsam.PriorFactorPose3(T_b_o_key, pose, noise), PRIOR)
            tag.parent_index = body.index
            added += 1
        return added

    def observed_tags(self, camera: Camera, body: RigidBody, tags: List[Tag],
                      frame: int) -> int:
        """Add reprojection factors for the tags of ``body`` seen by ``camera``.

        Returns the number of reprojection factors added; 0 if a
        precondition (tags present, valid camera and body pose) is not met.
        """
        if not tags:
            logger.warning("no tags for %s in frame %d", camera.name, frame)
            return 0
        if not camera.pose_estimate.is_valid():
            logger.warning("no pose estimate for cam %s in frame %d", camera.name, frame)
            return 0
        if not body.pose_estimate.is_valid():
            logger.warning("no pose estimate for body %s in frame %d", body.name, frame)
            return 0
        T_w_c_key = camera_key(camera.index, frame, camera.is_static)
        T_w_b_key = body_key(body.index, frame, body.is_static)
        # validate every key and the body prior before touching the graph
        tag_keys = [tag_key(tag.id) for tag in tags]
        body_noise = None
        new_body = not self.values.exists(T_w_b_key)
        if new_body and body.is_static and body.has_pose_prior:
            body_noise = prior_noise(body.pose_estimate.covariance, body.name)

        if not self.values.exists(T_w_c_key):
            self._insert(T_w_c_key, camera.pose_estimate.pose)
        if new_body:
            pe = body.pose_estimate
            self._insert(T_w_b_key, pe.pose)
            if body_noise is not None:
                logger.info("adding prior for body: %s", body.name)
                self._add_factor(gtsam.PriorFactorPose3(T_w_b_key, pe.pose, body_noise), PRIOR)

        added = 0
        for tag, T_b_o_key in zip(tags, tag_keys):
            if not tag.pose_estimate.is_valid():
                logger.warning("tag %d has invalid pose!", tag.id)
                continue
            if not self.values.exists(T_b_o_key):
                logger.warning("tag %d observed before it was added; skipping", tag.id)
                continue
            if tag.image_corners is None:
                logger.warning("tag %d has no measured corners; skipping", tag.id)
                continue
            measured = np.asarray(tag.image_corners, dtype=float).reshape(CORNERS_PER_TAG, 2)
            for i in range(CORNERS_PER_TAG):
                factor = make_reprojection_factor(T_w_c_key, T_w_b_key, T_b_o_key,
                                                  camera.model, tag.object_corner(i),
                                                  measured[i], self._pixel_noise)
                self._add_factor(factor, REPROJECTION)
                added += 1
        return added

    def _note_repeat(self, signature: tuple, what: str) -> None:
        self._measurements_seen[signature] += 1
        n = self._measurements_seen[signature]
        if n > 1:
            logger.warning("%s added again; it is now weighted %d times", what, n)

    def add_distance_measurement(self, body1: RigidBody, body2: RigidBody,
                                 tag1: Tag, tag2: Tag, dm: DistanceMeasurement) -> bool:
        """Constrain the distance between two tag corners on static bodies.

        Returns False while any of the four involved keys is still missing.
        Repeated calls add repeated factors.
        """
        if not body1.is_static or not body2.is_static:
            logger.error("non-static body has distance measurement %s!", dm.name)
            return False
        T_w_b1_key = body_key(body1.index, 0, True)
        T_w_b2_key = body_key(body2.index, 0, True)
        T_b1_o_key = tag_key(tag1.id)
        T_b2_o_key = tag_key(tag2.id)
        if not all(self.values.exists(k) for k in (T_w_b1_key, T_w_b2_key, T_b1_o_key, T_b2_o_key)):
            return False
        if tag1.id == tag2.id and dm.corner1 == dm.corner2:
            logger.error("distance measurement %s relates a corner to itself", dm.name)
            return False
        logger.info("adding distance measurement %s: tag %d to tag %d", dm.name, tag1.id, tag2.id)
        self._note_repeat((DISTANCE, tag1.id, dm.corner1, tag2.id, dm.corner2, dm.distance),
                          f"distance measurement {dm.name}")
        factor = make_distance_factor(T_w_b1_key, T_b1_o_key, tag1.object_corner(dm.corner1),
                                      T_w_b2_key, T_b2_o_key, tag2.object_corner(dm.corner2),
                                      dm.distance, isotropic(1, dm.noise))
        self._add_factor(factor, DISTANCE)
        return True

    def add_position_measurement(self, body: RigidBody, tag: Tag,
                                 m: PositionMeasurement) -> bool:
        """Constrain a corner's world position projected onto a direction."""
        if not body.is_static:
            logger.error("non-static body has position measurement %s!", m.name)
            return False
        T_w_b_key = body_key(body.index, 0, True)
        T_b_o_key = tag_key(tag.id)
        if not self.values.exists(T_w_b_key) or not self.values.exists(T_b_o_key):
            return False
        logger.info("adding position measurement %s: tag %d", m.name, tag.id)
        self._note_repeat((PROJECTED_LENGTH, tag.id, m.corner, m.length,
                           tuple(np.asarray(m.direction, dtype=float))),
                          f"position measurement {m.name}")
        factor = make_projected_length_factor(T_w_b_key, T_b_o_key, tag.object_corner(m.corner),
                                              m.direction, m.length, isotropic(1, m.noise))
        self._add_factor(factor, PROJECTED_LENGTH)
        return True

    # ------------------------------------------------------------------
    # solve
    # ------------------------------------------------------------------
    def optimize(self) -> float:
        """Batch solve over all factors; the solved values replace the working ones."""
        result = self.runner.run(self.graph, self.values, self.counts[REPROJECTION])
        self.values = result
        self.revision += 1
        return self.runner.error

    def compute_marginals(self) -> None:
        self.covariance.compute(self.graph, self.values, self.revision)

    @property
    def optimizer_error(self) -> float:
        return self.runner.error

    @property
    def optimizer_iterations(self) -> int:
        return self.runner.iterations

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def _pose(self, encode, *args) -> Optional[gtsam.Pose3]:
        """Value behind ``encode(*args)``; None if missing or not encodable."""
        try:
            key = encode(*args)
        except ConfigurationError as e:
            logger.debug("query for unencodable key: %s", e)
            return None
        if self.values.exists(key):
            return self.values.atPose3(key)
        return None

    def get_camera_pose(self, camera: Camera, frame: int) -> PoseEstimate:
        pose = self._pose(camera_key, camera.index, frame, camera.is_static)
        if pose is None:
            return PoseEstimate()
        return PoseEstimate.of(pose, self.runner.error, self.runner.iterations)

    def get_body_pose(self, body: RigidBody, frame: int) -> PoseEstimate:
        pose = self._pose(body_key, body.index, frame, body.is_static)
        if pose is None:
            return PoseEstimate()
        key = body_key(body.index, frame, body.is_static)
        cov = self.covariance.covariance(key, self.revision)
        return PoseEstimate.of(pose, self.runner.error, self.runner.iterations, cov)

    def get_tag_world_pose(self, body: RigidBody, tag_id: int, frame: int) -> PoseEstimate:
        """T_w_o = T_w_b * T_b_o."""
        T_b_o = self._pose(tag_key, tag_id)
        if T_b_o is None:
            return PoseEstimate()
        T_w_b = self._pose(body_key, body.index, frame, body.is_static)
        if T_w_b is None:
            return PoseEstimate()
        return PoseEstimate.of(T_w_b.compose(T_b_o), self.runner.error, self.runner.iterations)

    def get_tag_rel_pose(self, body: RigidBody, tag_id: int) -> PoseEstimate:
        T_b_o = self._pose(tag_key, tag_id)
        if T_b_o is None:
            return PoseEstimate()
        return PoseEstimate.of(T_b_o, self.runner.error, self.runner.iterations)

    def _corner_world(self, body: RigidBody, tag: Tag, corner: int,
                      frame: int = 0) -> Tuple[np.ndarray, bool]:
        if not 0 <= corner < CORNERS_PER_TAG:
            return np.zeros(3), False
        T_w_b = self._pose(body_key, body.index, frame, body.is_static)
        T_b_o = self._pose(tag_key, tag.id)
        if T_w_b is None or T_b_o is None:
            return np.zeros(3), False
        X_w = T_w_b.transformFrom(T_b_o.transformFrom(tag.object_corner(corner)))
        return np.asarray(X_w, dtype=float), True

    def get_position(self, body: RigidBody, tag: Tag, corner: int) -> Tuple[np.ndarray, bool]:
        """World position of a tag corner on a static body."""
        return self._corner_world(body, tag, corner)

    def get_difference(self, body1: RigidBody, tag1: Tag, corner1: int,
                       body2: RigidBody, tag2: Tag, corner2: int) -> Tuple[np.ndarray, bool]:
        """X_w_1 - X_w_2 for two tag corners on static bodies."""
        X_w_1, ok1 = self._corner_world(body1, tag1, corner1)
        X_w_2, ok2 = self._corner_world(body2, tag2, corner2)
        if not (ok1 and ok2):
            return np.zeros(3), False
        return X_w_1 - X_w_2, True

    # ------------------------------------------------------------------
    # snapshot / export
    # ------------------------------------------------------------------
    def snapshot(self) -> gtsam.Values:
        """Copy of the current values; later mutations do not show through."""
        return gtsam.Values(self.values)

    def factor_counts(self) -> Dict[str, int]:
        return dict(self.counts)

    def num_factors(self) -> int:
        return self.graph.size()

    def corner_points(self, bodies: Iterable[RigidBody], frame: int = 0) -> Dict[int, np.ndarray]:
        """World position of every corner of every tag in the graph, keyed by corner key."""
        out: Dict[int, np.ndarray] = {}
        for body in bodies:
            T_w_b = self._pose(body_key, body.index, frame, body.is_static)
            if T_w_b is None:
                continue
            for tag in body.tags.values():
                T_b_o = self._pose(tag_key, tag.id)
                if T_b_o is None:
                    continue
                for i in range(CORNERS_PER_TAG):
                    X_w = T_w_b.transformFrom(T_b_o.transformFrom(tag.object_corner(i)))
                    out[corner_key(tag.id, i, 0 if body.is_static else frame)] = \
                        np.asarray(X_w, dtype=float)
        return out

    def corner_distances(self, bodies: Iterable[RigidBody],
                         frame: int = 0) -> Tuple[List[int], np.ndarray]:
        """Pairwise distances between all tag corners; keys sorted ascending."""
        points = self.corner_points(bodies, frame)
        keys = sorted(points)
        if not keys:
            return [], np.zeros((0, 0))
        P = np.array([points[k] for k in keys])
        diff = P[:, None, :] - P[None, :, :]
        return keys, np.sqrt((diff ** 2).sum(axis=-1))
