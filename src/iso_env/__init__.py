"""iso-env: isolated, reproducible command execution in container sessions."""

from iso_env.config import (
    PeerSpec,
    PeersSpec,
    PortMapping,
    ProjectDescriptor,
    RuntimeSettings,
    ServiceSpec,
)
from iso_env.environment import Environment
from iso_env.errors import (
    ConfigurationError,
    EngineError,
    ExecCancelledError,
    ImageBuildError,
    IsoError,
    ReadinessTimeoutError,
    ResourceConflictError,
    ResourceNotFoundError,
)
from iso_env.garbage import (
    cleanup_orphans,
    find_orphans,
    list_managed_containers,
    startup_sweep,
    stop_all,
)
from iso_env.logging_config import configure_logging
from iso_env.naming import ResourceNames, resolve_project, sanitize_path
from iso_env.session import resolve_session
from iso_env.types import (
    ManagedContainer,
    OrphanedSession,
    PeerStatus,
    Project,
    Session,
    Status,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Environment",
    # Configuration
    "PeerSpec",
    "PeersSpec",
    "PortMapping",
    "ProjectDescriptor",
    "RuntimeSettings",
    "ServiceSpec",
    "configure_logging",
    # Types
    "ManagedContainer",
    "OrphanedSession",
    "PeerStatus",
    "Project",
    "Session",
    "Status",
    # Naming
    "ResourceNames",
    "resolve_project",
    "resolve_session",
    "sanitize_path",
    # Cleanup
    "cleanup_orphans",
    "find_orphans",
    "list_managed_containers",
    "startup_sweep",
    "stop_all",
    # Errors
    "ConfigurationError",
    "EngineError",
    "ExecCancelledError",
    "ImageBuildError",
    "IsoError",
    "ReadinessTimeoutError",
    "ResourceConflictError",
    "ResourceNotFoundError",
]
