from typing import Dict, Iterable, List
import numpy as np

import gtsam

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt


def _xyz(t) -> np.ndarray:
    return np.asarray(t, dtype=float).reshape(3)


def extract_xyz_per_owner(values: gtsam.Values, keys_by_owner: Dict[str, List[int]]) -> Dict[str, np.ndarray]:
    """Positions of each owner's keys, in the given (frame) order."""
    out = {}
    for name, keys in keys_by_owner.items():
        coords = [_xyz(values.atPose3(k).translation()) for k in keys if values.exists(k)]
        if coords:
            out[name] = np.asarray(coords)
    return out


def plot_trajectories_2d(values: gtsam.Values, keys_by_owner: Dict[str, List[int]], path_png: str):
    traj = extract_xyz_per_owner(values, keys_by_owner)
    plt.figure(figsize=(8, 6))
    for name, xyz in traj.items():
        if len(xyz) == 1:
            plt.scatter(xyz[:, 0], xyz[:, 1], marker="^", label=name)
        else:
            plt.plot(xyz[:, 0], xyz[:, 1], label=name)
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    if traj:
        plt.legend()
    plt.title("Camera and body trajectories (XY)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()


def plot_trajectories_3d(values: gtsam.Values, keys_by_owner: Dict[str, List[int]], path_png: str):
    traj = extract_xyz_per_owner(values, keys_by_owner)
    from mpl_toolkits.mplot3d import Axes3D  # noqa
    fig = plt.figure(figsize=(8, 6))
    ax = fig.add_subplot(111, projection='3d')
    for name, xyz in traj.items():
        ax.plot(xyz[:, 0], xyz[:, 1], xyz[:, 2], marker=".", label=name)
    ax.set_xlabel("x [m]"); ax.set_ylabel("y [m]"); ax.set_zlabel("z [m]")
    if traj:
        ax.legend()
    ax.set_title("Camera and body trajectories (3D)")
    fig.tight_layout()
    fig.savefig(path_png, dpi=150)
    plt.close(fig)


def plot_tag_map(corners_by_tag: Dict[int, np.ndarray], path_png: str,
                 cameras: Iterable[np.ndarray] = ()):
    """Top view of the tag outlines (4x3 world corners each), labelled by id."""
    plt.figure(figsize=(8, 6))
    for tag_id, corners in sorted(corners_by_tag.items()):
        c = np.vstack([corners, corners[:1]])
        plt.plot(c[:, 0], c[:, 1], color="tab:blue", linewidth=1.0)
        center = corners.mean(axis=0)
        plt.annotate(str(tag_id), (center[0], center[1]), fontsize=7,
                     ha="center", va="center")
    cams = np.asarray(list(cameras), dtype=float).reshape(-1, 3)
    if cams.size:
        plt.scatter(cams[:, 0], cams[:, 1], marker="^", color="tab:red", s=12, label="cameras")
        plt.legend()
    plt.axis("equal")
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.title("Tag map (XY)")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()
