"""Utilities shared by the tagslam CLI and front-ends.

This package hosts modules that are independent of the graph itself
(KPI logging and plotting).
"""
