"""tagslam: pose-graph backend for fiducial-tag SLAM.

This package provides:
- A stable key space for cameras, bodies, tags and tag corners
- Pose estimate / rigid body / camera / tag data models
- Camera distortion models with analytic Jacobians
- Custom GTSAM factors (reprojection, corner distance, projected length)
- A graph state that ingests observations and answers pose queries
- Batch Levenberg-Marquardt optimisation and on-demand marginals
- A frame driver and YAML/JSON loaders (see main.py for the CLI)

Design intent:
Keep the graph construction independent of where detections come from,
so the same GraphState serves the CLI, tests and any live front-end.
"""
__all__ = ["keys", "models", "camera_models", "measurements", "factors",
           "robust", "graph", "optimize", "loader", "tracker"]
__version__ = "0.1.0"
