"""Container-engine access for iso-env."""

from iso_env.engine.protocol import (
    STDERR,
    STDOUT,
    ContainerSpec,
    ContainerSummary,
    ExecStream,
    ManagedFilter,
    ResourceClient,
    list_managed,
)

__all__ = [
    "STDERR",
    "STDOUT",
    "ContainerSpec",
    "ContainerSummary",
    "ExecStream",
    "ManagedFilter",
    "ResourceClient",
    "list_managed",
]
