"""Control plane infrastructure layer."""

from idehub.infra.docker import (
    DockerClient,
    NetworkAPI,
    NetworkAttachment,
    NodeAPI,
    ServiceAPI,
    ServiceSpec,
    SystemAPI,
    TaskAPI,
    demux_log_frames,
)

__all__ = [
    "DockerClient",
    "NetworkAPI",
    "NetworkAttachment",
    "NodeAPI",
    "ServiceAPI",
    "ServiceSpec",
    "SystemAPI",
    "TaskAPI",
    "demux_log_frames",
]
