import json

import numpy as np
import pytest

from tagslam.camera_models import Equidistant, RadialTangential
from tagslam.errors import ConfigurationError
from tagslam.loader import LoaderConfig, load_config, load_detections, parse_config

CONFIG_YAML = """
default_tag_size: 0.16
pixel_noise: 2.0
tag_sizes: {7: 0.08}
bodies:
  - name: world
    static: true
    default: true
    pose: {rotation: [1, 0, 0, 0], translation: [0, 0, 0], sigmas: [0.001, 0.001]}
    tags:
      - {id: 0, pose: {rotation: [1, 0, 0, 0], translation: [0.5, 0, 0], sigmas: [0.0, 0.0]}}
      - {id: 7}
  - name: rover
    static: false
    tags:
      - {id: 3}
cameras:
  - name: cam0
    static: true
    intrinsics: [600, 600, 320, 240]
    radtan: [0.0, 0.0, 0.0, 0.0]
  - name: cam1
    intrinsics: [400, 400, 320, 240]
    equidistant: [0.01, 0.0, 0.0, 0.0]
distance_measurements:
  - {name: d07, tag1: 0, corner1: 0, tag2: 7, corner2: 1, distance: 0.5, noise: 0.001}
position_measurements:
  - {name: p0, tag: 0, corner: 0, length: 1.0, direction: [2, 0, 0], noise: 0.001}
"""


def _minimal(**extra):
    data = {"bodies": [{"name": "world", "static": True}],
            "cameras": [{"name": "cam0", "intrinsics": [1, 1, 0, 0], "radtan": [0, 0, 0, 0]}]}
    data.update(extra)
    return data


def test_load_yaml_config(tmp_path):
    path = tmp_path / "scene.yaml"
    path.write_text(CONFIG_YAML)
    cfg = load_config(str(path))
    assert [b.name for b in cfg.bodies] == ["world", "rover"]
    world = cfg.body_by_name("world")
    assert world.is_static and world.is_default and world.has_pose_prior
    assert world.tags[0].has_known_pose
    assert not world.tags[7].has_known_pose
    assert world.tags[7].size == pytest.approx(0.08)
    assert world.tags[0].size == pytest.approx(0.16)
    assert cfg.body_by_name("rover").tags[3].parent_index == 1
    assert isinstance(cfg.cameras[0].model, RadialTangential)
    assert isinstance(cfg.cameras[1].model, Equidistant)
    assert not cfg.cameras[1].is_static
    assert cfg.pixel_noise == pytest.approx(2.0)
    assert cfg.distance_measurements[0].tag2 == 7
    assert np.allclose(cfg.position_measurements[0].direction, [1.0, 0.0, 0.0])


def test_json_config_and_quaternion_order(tmp_path):
    data = _minimal()
    data["bodies"][0]["pose"] = {"rotation": [0, 0, 0, 1], "translation": [1, 2, 3]}
    path = tmp_path / "scene.json"
    path.write_text(json.dumps(data))
    cfg = load_config(str(path), LoaderConfig(quaternion_order="xyzw"))
    pose = cfg.bodies[0].pose_estimate.pose
    assert np.allclose(pose.rotation().matrix(), np.eye(3))
    assert np.allclose(pose.translation(), [1, 2, 3])


@pytest.mark.parametrize("data", [
    _minimal(cameras=[{"name": "c", "intrinsics": [1, 1, 0, 0]}]),
    _minimal(cameras=[{"name": "c", "intrinsics": [1, 1, 0, 0],
                       "radtan": [0, 0, 0, 0], "equidistant": [0, 0, 0, 0]}]),
    _minimal(bodies=[{"name": "b"}]),
    _minimal(bodies=[{"name": "b", "static": False,
                      "pose": {"rotation": [1, 0, 0, 0], "translation": [0, 0, 0]}}]),
    _minimal(bodies=[{"name": "a", "static": True, "tags": [{"id": 1}]},
                     {"name": "b", "static": True, "tags": [{"id": 1}]}]),
    _minimal(bodies=[{"name": "a", "static": True, "default": True},
                     {"name": "b", "static": True, "default": True}]),
    _minimal(bodies=[{"name": "a", "static": True, "tags": [{"id": 256}]}]),
    _minimal(bodies=[{"name": "a", "static": True,
                      "pose": {"rotation": [1, 0, 0], "translation": [0, 0, 0]}}]),
    _minimal(distance_measurements=[{"tag1": 0, "corner1": 4, "tag2": 1, "corner2": 0,
                                     "distance": 1.0, "noise": 0.1}]),
])
def test_malformed_config_raises(data):
    with pytest.raises(ConfigurationError):
        parse_config(data)


def test_load_detections_sorted_and_tolerant(tmp_path):
    log = {"frames": [
        {"stamp": 2.0, "cameras": {"cam0": [{"id": 1, "corners": [[0, 0], [1, 0], [1, 1], [0, 1]]}]}},
        {"stamp": 1.0, "cameras": {"cam0": [
            {"id": 0, "corners": [[0, 0], [1, 0], [1, 1], [0, 1]]},
            {"id": 2, "corners": [[0, 0], [1, 0]]},
            {"corners": [[0, 0], [1, 0], [1, 1], [0, 1]]},
        ]}},
    ]}
    path = tmp_path / "dets.json"
    path.write_text(json.dumps(log))
    frames = load_detections(str(path))
    assert [f.stamp for f in frames] == [1.0, 2.0]
    assert [f.frame for f in frames] == [0, 1]
    first = frames[0].cameras["cam0"]
    assert [d.id for d in first] == [0]
    assert first[0].corners.shape == (4, 2)
