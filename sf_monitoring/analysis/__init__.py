"""Anomaly detection over monitoring snapshots."""

from .anomaly_detector import AnomalyDetector

__all__ = ["AnomalyDetector"]
