"""Utilities shared around the SLAM core.

This package hosts modules that do not touch the graph internals directly
(KPI logging, plotting, export, trajectory metrics). They consume graph
snapshots and optimization reports only.
"""
