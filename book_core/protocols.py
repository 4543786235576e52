from __future__ import annotations

from typing import Any, Callable, Dict, Protocol

from .types import Snapshot


class SnapshotSource(Protocol):
    def fetch_snapshot(self) -> Snapshot:
        """Return a fresh snapshot; raise TransportError on network/parse failure."""
        ...


class DeltaStreamSource(Protocol):
    """Delivers raw depth-diff payloads to ``on_depth`` until closed."""

    on_depth: Callable[[Dict[str, Any], int], None]

    async def run_async(self) -> None:
        ...

    def close(self) -> None:
        ...
