"""
CI Janitor common module.

This module contains the domain models, configuration loading, errors and
the abstract container engine interface shared by the watcher and the
operator CLI.

The common module has no dependencies on other janitor_* modules.
"""

from .config import JanitorConfig, ReconcilerSettings, load_config
from .engine import ContainerEngine
from .errors import ConfigError, EngineError, EventStreamError, JanitorError
from .models import (
    CleanupSummary,
    ContainerEvent,
    ContainerSnapshot,
    KindOutcome,
    NetworkResource,
    ReconcilerState,
    ResourceKind,
    ServiceResource,
    VolumeResource,
)

__all__ = [
    "CleanupSummary",
    "ConfigError",
    "ContainerEngine",
    "ContainerEvent",
    "ContainerSnapshot",
    "EngineError",
    "EventStreamError",
    "JanitorConfig",
    "JanitorError",
    "KindOutcome",
    "NetworkResource",
    "ReconcilerSettings",
    "ReconcilerState",
    "ResourceKind",
    "ServiceResource",
    "VolumeResource",
    "load_config",
]
