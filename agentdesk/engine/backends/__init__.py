"""Agent backends: wire realizations of the stream-json protocol."""
from __future__ import annotations

from ..errors import BackendNotAvailableError
from ..models import BackendKind
from ..turn_injector import TurnInjector
from .base import Backend, BackendOptions, PermissionHandler
from .pipe import PipeBackend
from .sdk import SdkBackend

__all__ = [
    "Backend",
    "BackendOptions",
    "PermissionHandler",
    "PipeBackend",
    "SdkBackend",
    "create_backend",
]

_BACKENDS: dict[BackendKind, type[Backend]] = {
    BackendKind.PIPE: PipeBackend,
    BackendKind.SDK: SdkBackend,
}


def create_backend(
    kind: str | BackendKind,
    options: BackendOptions,
    prompts: TurnInjector,
    permission_handler: PermissionHandler,
) -> Backend:
    """Instantiate the backend registered for *kind*."""
    try:
        backend_kind = BackendKind(str(getattr(kind, "value", kind)).lower())
    except ValueError:
        raise BackendNotAvailableError(
            str(kind), f"expected one of: {', '.join(k.value for k in BackendKind)}"
        ) from None
    return _BACKENDS[backend_kind](options, prompts, permission_handler)
