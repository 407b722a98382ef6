"""
Health probing and classification.
"""
from yamisskey_doctor.health.classifier import HealthClassifier, run_check
from yamisskey_doctor.health.probe_client import Deadline, ProbeClient

__all__ = [
    "HealthClassifier",
    "run_check",
    "Deadline",
    "ProbeClient",
]
