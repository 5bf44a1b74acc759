"""Static configuration and detection log loading.

Config (YAML or JSON)::

    default_tag_size: 0.16
    pixel_noise: 1.0
    tag_sizes: {7: 0.08}
    bodies:
      - name: world
        static: true
        default: true              # absorbs tags no body claims
        pose: {rotation: [1, 0, 0, 0], translation: [0, 0, 0], sigmas: [0.001, 0.001]}
        tags:
          - {id: 0, pose: {rotation: [...], translation: [...], sigmas: [0.01, 0.005]}}
          - {id: 1}                # owned, pose unknown
    cameras:
      - name: cam0
        static: false
        intrinsics: [fx, fy, u0, v0]
        radtan: [k1, k2, p1, p2]   # or equidistant: [k1, k2, k3, k4]
    distance_measurements:
      - {name: d01, tag1: 0, corner1: 0, tag2: 1, corner2: 1, distance: 0.5, noise: 0.001}
    position_measurements:
      - {name: p0, tag: 0, corner: 0, length: 1.0, direction: [1, 0, 0], noise: 0.001}

Detection log (JSON)::

    {"frames": [{"stamp": 0.0,
                 "cameras": {"cam0": [{"id": 3, "corners": [[u, v], ...]}]}}]}
"""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import numpy as np
import yaml

from .camera_models import make_model
from .errors import ConfigurationError
from .keys import MAX_BODY_ID, MAX_CAM_ID, CORNERS_PER_TAG
from .models import (Camera, DistanceMeasurement, PoseEstimate, PositionMeasurement,
                     Quaternion, RigidBody, Tag, Translation, covariance_from_sigmas,
                     pose_from, to_covariance)

logger = logging.getLogger("tagslam.loader")


@dataclass
class LoaderConfig:
    quaternion_order: str = "wxyz"   # order of 'rotation' lists in the file
    default_tag_size: float = 0.5
    pixel_noise: float = 1.0
    validate_schema: bool = True


@dataclass
class TagSlamConfig:
    bodies: List[RigidBody] = field(default_factory=list)
    cameras: List[Camera] = field(default_factory=list)
    tag_sizes: Dict[int, float] = field(default_factory=dict)
    default_tag_size: float = 0.5
    pixel_noise: float = 1.0
    compute_marginals: bool = False
    distance_measurements: List[DistanceMeasurement] = field(default_factory=list)
    position_measurements: List[PositionMeasurement] = field(default_factory=list)

    def body_by_name(self, name: str) -> Optional[RigidBody]:
        for body in self.bodies:
            if body.name == name:
                return body
        return None


@dataclass
class TagDetection:
    id: int
    corners: np.ndarray  # 4x2 pixels


@dataclass
class FrameDetections:
    frame: int
    stamp: float
    cameras: Dict[str, List[TagDetection]]


def _q_from_list(q: List[float], order: str) -> Quaternion:
    if order == "wxyz":
        if len(q) != 4: raise ValueError("Quaternion must be [w,x,y,z]")
        return Quaternion(q[0], q[1], q[2], q[3])
    elif order == "xyzw":
        if len(q) != 4: raise ValueError("Quaternion must be [x,y,z,w]")
        return Quaternion(q[3], q[0], q[1], q[2])
    else:
        raise ValueError(f"Unsupported quaternion order: {order}")


def _t_from_list(t: List[float]) -> Translation:
    if len(t) != 3: raise ValueError("Translation must be [x,y,z]")
    return Translation(t[0], t[1], t[2])


def _parse_pose(d: Dict[str, Any], cfg: LoaderConfig, what: str) -> PoseEstimate:
    """Accept {rotation, translation, sigmas | covariance}."""
    try:
        rot = _q_from_list(d["rotation"], cfg.quaternion_order)
        trans = _t_from_list(d["translation"])
        if "covariance" in d:
            cov = to_covariance(d["covariance"])
        else:
            sigmas = d.get("sigmas", [0.0, 0.0])
            if len(sigmas) != 2:
                raise ValueError("sigmas must be [rotation_sigma, translation_sigma]")
            cov = covariance_from_sigmas(float(sigmas[0]), float(sigmas[1]))
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"malformed pose for {what}: {e}") from e
    return PoseEstimate.of(pose_from(rot, trans), covariance=cov)


def _parse_tag(d: Dict[str, Any], sizes: Dict[int, float], default_size: float,
               cfg: LoaderConfig, body_name: str) -> Tag:
    try:
        tag_id = int(d["id"])
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"body {body_name}: tag without valid id: {d}") from e
    size = float(d.get("size", sizes.get(tag_id, default_size)))
    sizes.setdefault(tag_id, size)
    tag = Tag(id=tag_id, size=size)
    if d.get("pose") is not None:
        tag.pose_estimate = _parse_pose(d["pose"], cfg, f"tag {tag_id}")
        tag.has_known_pose = True
    return tag


def _parse_body(d: Dict[str, Any], index: int, sizes: Dict[int, float],
                default_size: float, cfg: LoaderConfig) -> RigidBody:
    if index >= MAX_BODY_ID:
        raise ConfigurationError(f"too many bodies, at most {MAX_BODY_ID}")
    name = str(d.get("name", f"body{index}"))
    if "static" not in d:
        raise ConfigurationError(f"body {name}: 'static' flag missing")
    body = RigidBody(name=name, index=index, is_static=bool(d["static"]),
                     is_default=bool(d.get("default", False)))
    if d.get("pose") is not None:
        if not body.is_static:
            raise ConfigurationError(f"body {name}: pose prior only allowed on static bodies")
        body.pose_estimate = _parse_pose(d["pose"], cfg, f"body {name}")
        body.has_pose_prior = True
    for td in d.get("tags", []) or []:
        tag = _parse_tag(td, sizes, default_size, cfg, name)
        if tag.id in body.tags:
            raise ConfigurationError(f"body {name}: duplicate tag id {tag.id}")
        tag.parent_index = index
        body.tags[tag.id] = tag
    return body


def _parse_camera(d: Dict[str, Any], index: int) -> Camera:
    if index >= MAX_CAM_ID:
        raise ConfigurationError(f"too many cameras, at most {MAX_CAM_ID}")
    name = str(d.get("name", f"cam{index}"))
    has_radtan = d.get("radtan") is not None
    has_equi = d.get("equidistant") is not None
    if has_radtan == has_equi:
        raise ConfigurationError(
            f"camera {name}: exactly one of 'radtan' or 'equidistant' must be given")
    if "intrinsics" not in d:
        raise ConfigurationError(f"camera {name}: 'intrinsics' missing")
    kind = "radtan" if has_radtan else "equidistant"
    model = make_model(kind, d["intrinsics"], d[kind])
    return Camera(name=name, index=index, is_static=bool(d.get("static", False)), model=model)


def _parse_direction(v) -> np.ndarray:
    n = np.asarray(v, dtype=float).reshape(3)
    norm = np.linalg.norm(n)
    if norm == 0.0:
        raise ValueError("direction must be non-zero")
    return n / norm


def _check_corner(c: int, what: str) -> int:
    c = int(c)
    if not 0 <= c < CORNERS_PER_TAG:
        raise ConfigurationError(f"{what}: corner out of range: {c}")
    return c


def parse_config(data: Dict[str, Any], cfg: Optional[LoaderConfig] = None) -> TagSlamConfig:
    cfg = cfg or LoaderConfig()
    if not isinstance(data, dict):
        raise ConfigurationError(f"config must be a mapping, got {type(data).__name__}")
    default_size = float(data.get("default_tag_size", cfg.default_tag_size))
    sizes = {int(k): float(v) for k, v in (data.get("tag_sizes") or {}).items()}
    out = TagSlamConfig(tag_sizes=sizes, default_tag_size=default_size,
                        pixel_noise=float(data.get("pixel_noise", cfg.pixel_noise)),
                        compute_marginals=bool(data.get("compute_marginals", False)))
    for i, bd in enumerate(data.get("bodies", []) or []):
        out.bodies.append(_parse_body(bd, i, sizes, default_size, cfg))
    for i, cd in enumerate(data.get("cameras", []) or []):
        out.cameras.append(_parse_camera(cd, i))
    if cfg.validate_schema:
        if not out.cameras:
            logger.warning("config declares no cameras")
        if sum(1 for b in out.bodies if b.is_default) > 1:
            raise ConfigurationError("at most one body may be the default body")
        owners: Dict[int, str] = {}
        for body in out.bodies:
            for tag_id in body.tags:
                if tag_id in owners:
                    raise ConfigurationError(
                        f"tag {tag_id} claimed by both {owners[tag_id]} and {body.name}")
                owners[tag_id] = body.name
    for i, m in enumerate(data.get("distance_measurements", []) or []):
        try:
            name = str(m.get("name", f"distance{i}"))
            out.distance_measurements.append(DistanceMeasurement(
                name=name,
                tag1=int(m["tag1"]), corner1=_check_corner(m["corner1"], name),
                tag2=int(m["tag2"]), corner2=_check_corner(m["corner2"], name),
                distance=float(m["distance"]), noise=float(m["noise"])))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"malformed distance measurement [{i}]: {e}") from e
    for i, m in enumerate(data.get("position_measurements", []) or []):
        try:
            name = str(m.get("name", f"position{i}"))
            out.position_measurements.append(PositionMeasurement(
                name=name, tag=int(m["tag"]), corner=_check_corner(m["corner"], name),
                length=float(m["length"]), direction=_parse_direction(m["direction"]),
                noise=float(m["noise"])))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"malformed position measurement [{i}]: {e}") from e
    return out


def _read_structured(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        if os.path.splitext(path)[1].lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def load_config(path: str, cfg: Optional[LoaderConfig] = None) -> TagSlamConfig:
    return parse_config(_read_structured(path), cfg)


def _parse_detection(d: Dict[str, Any]) -> TagDetection:
    corners = np.asarray(d["corners"], dtype=float)
    if corners.size != 2 * CORNERS_PER_TAG:
        raise ValueError(f"expected {CORNERS_PER_TAG} corners, got shape {corners.shape}")
    return TagDetection(id=int(d["id"]), corners=corners.reshape(CORNERS_PER_TAG, 2))


def iter_frames(data: Any) -> Iterator[FrameDetections]:
    """Yield frames in stamp order; malformed detections are skipped."""
    frames = data.get("frames", []) if isinstance(data, dict) else (data or [])
    frames = sorted(frames, key=lambda fr: float(fr.get("stamp", 0.0)))
    for frame_idx, fr in enumerate(frames):
        cams: Dict[str, List[TagDetection]] = {}
        for cam_name, dets in (fr.get("cameras", {}) or {}).items():
            parsed = []
            for det_idx, d in enumerate(dets or []):
                try:
                    parsed.append(_parse_detection(d))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed detection frame %d cam %s [%d]: %s",
                                   frame_idx, cam_name, det_idx, e)
            cams[str(cam_name)] = parsed
        yield FrameDetections(frame=frame_idx, stamp=float(fr.get("stamp", 0.0)), cameras=cams)


def load_detections(path: str) -> List[FrameDetections]:
    return list(iter_frames(_read_structured(path)))
