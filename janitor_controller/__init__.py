"""
CI Janitor controller module.

This module contains the event-driven watcher that removes the resources a
finished CI job leaves on the host: the event stream consumer, the job
pattern classifier, the cleanup reconciler, the compose bridge and the
docker CLI engine adapter.
"""

from .classifier import JobPatternClassifier, MatchReason, matches
from .compose import ComposeBridge
from .docker_engine import DockerEngine
from .events import EventStreamConsumer
from .reconciler import CleanupReconciler
from .watcher import JobWatcher

__all__ = [
    "CleanupReconciler",
    "ComposeBridge",
    "DockerEngine",
    "EventStreamConsumer",
    "JobPatternClassifier",
    "JobWatcher",
    "MatchReason",
    "matches",
]
