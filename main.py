import argparse, os, json, csv, logging
import numpy as np
from typing import Dict, List

import gtsam

from tagslam.errors import ConfigurationError
from tagslam.graph import GraphState
from tagslam.keys import (CORNERS_PER_TAG, body_key, camera_key, decode_corner_key,
                          decode_key, tag_key)
from tagslam.loader import LoaderConfig, load_config, load_detections
from tagslam.tracker import TagSlam
from tagslam_common.kpi_logging import KPILogger
from tagslam_common.viz import plot_tag_map, plot_trajectories_2d, plot_trajectories_3d


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Fiducial tag SLAM: cameras, bodies and tags from tag detections.")
    ap.add_argument("--config", required=True, help="Path to YAML/JSON scene config (bodies, cameras, tags)")
    ap.add_argument("--detections", required=True, help="Path to JSON detection log")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--log", default="INFO", help="Logging level")
    ap.add_argument("--pixel-noise", type=float, default=None,
                    help="Reprojection noise sigma in pixels (overrides config)")
    ap.add_argument("--marginals", action="store_true", help="Compute marginal covariances after every frame")
    ap.add_argument("--robust", choices=["none", "huber", "cauchy"], default="none",
                    help="Robust kernel on reprojection factors")
    ap.add_argument("--robust-k", type=float, default=None, help="Robust tuning parameter")
    ap.add_argument("--max-iterations", type=int, default=100, help="LM iteration cap per frame")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in config")
    ap.add_argument("--no-plots", action="store_true", help="Skip PNG export")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def _rot3_to_quat_wxyz(R):
    q = R.toQuaternion()
    return float(q.w()), float(q.x()), float(q.y()), float(q.z())


def _pose_row(key: int, pose: gtsam.Pose3) -> Dict[str, object]:
    gk = decode_key(key)
    tx, ty, tz = (float(v) for v in np.asarray(pose.translation(), dtype=float))
    qw, qx, qy, qz = _rot3_to_quat_wxyz(pose.rotation())
    return {"key": gk.label(), "frame": gk.frame,
            "x": tx, "y": ty, "z": tz, "qw": qw, "qx": qx, "qy": qy, "qz": qz}


def _write_rows(rows: List[Dict[str, object]], path: str, extra: List[str] = ()) -> None:
    headers = ["key"] + list(extra) + ["frame", "x", "y", "z", "qw", "qx", "qy", "qz"]
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=headers)
        w.writeheader()
        for r in rows:
            w.writerow(r)


def owner_keys(slam: TagSlam, num_frames: int):
    """Camera/body keys per entity, in frame order (static ones once)."""
    cams: Dict[str, List[int]] = {}
    for cam in slam.cameras.values():
        frames = [0] if cam.is_static else range(num_frames)
        cams[cam.name] = [camera_key(cam.index, f, cam.is_static) for f in frames]
    bodies: Dict[str, List[int]] = {}
    for body in slam.bodies:
        frames = [0] if body.is_static else range(num_frames)
        bodies[body.name] = [body_key(body.index, f, body.is_static) for f in frames]
    return cams, bodies


def export_csv(slam: TagSlam, num_frames: int, out_dir: str) -> None:
    values = slam.graph.values
    cams, bodies = owner_keys(slam, num_frames)
    for fname, groups in (("cameras.csv", cams), ("bodies.csv", bodies)):
        rows = []
        for name, keys in groups.items():
            for k in keys:
                if values.exists(k):
                    rows.append(dict(_pose_row(k, values.atPose3(k)), name=name))
        _write_rows(rows, os.path.join(out_dir, fname), extra=["name"])
    rows = []
    last = max(num_frames - 1, 0)
    for body in slam.bodies:
        for tag_id in sorted(body.tags):
            pe = slam.graph.get_tag_world_pose(body, tag_id, 0 if body.is_static else last)
            if not pe.is_valid():
                continue
            row = _pose_row(tag_key(tag_id), pe.pose)
            row.update(body=body.name, tag=tag_id)
            rows.append(row)
    _write_rows(rows, os.path.join(out_dir, "tags.csv"), extra=["body", "tag"])


def export_stats_json(counts: Dict[str, int], graph_error: float, iterations: int,
                      frames: int, kpi_counts: Dict[str, int], out_path: str):
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump({"factors": counts, "final_error": graph_error,
                   "iterations": iterations, "frames": frames,
                   "kpi_events": kpi_counts}, f, indent=2)


def export_plots(slam: TagSlam, num_frames: int, out_dir: str) -> None:
    values = slam.graph.values
    cams, bodies = owner_keys(slam, num_frames)
    owners = dict(cams)
    owners.update({name: keys for name, keys in bodies.items()
                   if not slam.config.body_by_name(name).is_static})
    plot_trajectories_2d(values, owners, os.path.join(out_dir, "trajectories_xy.png"))
    plot_trajectories_3d(values, owners, os.path.join(out_dir, "trajectories_3d.png"))
    static = [b for b in slam.bodies if b.is_static]
    points = slam.graph.corner_points(static)
    corners_by_tag: Dict[int, np.ndarray] = {}
    for k, p in points.items():
        tag_id, corner, _ = decode_corner_key(k)
        corners_by_tag.setdefault(tag_id, np.zeros((CORNERS_PER_TAG, 3)))[corner] = p
    cam_pts = [np.asarray(values.atPose3(k).translation(), dtype=float)
               for keys in cams.values() for k in keys if values.exists(k)]
    plot_tag_map(corners_by_tag, os.path.join(out_dir, "tag_map.png"), cam_pts)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    log = logging.getLogger("tagslam.main")

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)
    kpi_dir = os.path.join(out_dir, "kpi_metrics")
    ensure_dir(kpi_dir)

    cfg = LoaderConfig(quaternion_order=args.quat_order, validate_schema=True)
    try:
        config = load_config(args.config, cfg)
    except ConfigurationError as e:
        log.error("invalid config %s: %s", args.config, e)
        return 2
    frames = load_detections(args.detections)
    log.info("Loaded %d bodies, %d cameras, %d frames",
             len(config.bodies), len(config.cameras), len(frames))

    robust = None if args.robust == "none" else args.robust
    pixel_noise = args.pixel_noise if args.pixel_noise is not None else config.pixel_noise
    with KPILogger(log_path=os.path.join(kpi_dir, "kpi_events.jsonl"), emit_to_logger=False) as kpi:
        graph = GraphState(pixel_noise=pixel_noise, robust_kind=robust, robust_k=args.robust_k,
                           max_iterations=args.max_iterations, kpi=kpi)
        slam = TagSlam(config, graph=graph, kpi=kpi,
                       compute_marginals=True if args.marginals else None)
        results = slam.run(frames)

    export_csv(slam, len(frames), out_dir)
    final_error = results[-1].error if results else 0.0
    final_iters = results[-1].iterations if results else 0
    export_stats_json(graph.factor_counts(), final_error, final_iters, len(frames),
                      dict(kpi.counts), os.path.join(out_dir, "graph_stats.json"))
    if not args.no_plots:
        export_plots(slam, len(frames), out_dir)
    log.info("Done. Final error %.6g; outputs in %s", final_error, out_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
