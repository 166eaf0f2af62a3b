from __future__ import annotations

from typing import Any, Protocol


class CaptureSource(Protocol):
    """Source of the host's outgoing screen track.

    `start()` may suspend on a permission prompt; a refusal must surface as
    `deskbridge.errors.CapturePermissionDenied`. `stop()` is idempotent.
    """

    async def start(self) -> Any: ...

    async def stop(self) -> None: ...
