"""
tasktrack - hierarchical pipeline execution tracking with per-host process metrics
"""

__version__ = "0.4.0"
