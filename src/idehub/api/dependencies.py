"""API dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Request

from idehub.core.errors import InvalidInstanceIdError
from idehub.services import ControlPlane
from idehub.services.identity import is_valid_id


def get_control_plane(request: Request) -> ControlPlane:
    """Get the control plane built by the application lifespan.

    Raises:
        RuntimeError: If called before the lifespan has started.
    """
    plane = getattr(request.app.state, "control_plane", None)
    if plane is None:
        raise RuntimeError("Control plane not initialized")
    return plane


def valid_instance_id(instance_id: str) -> str:
    """Path parameter guard for instance ids."""
    if not is_valid_id(instance_id):
        raise InvalidInstanceIdError(instance_id)
    return instance_id


Plane = Annotated[ControlPlane, Depends(get_control_plane)]
InstanceId = Annotated[str, Depends(valid_instance_id)]
