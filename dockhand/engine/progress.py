"""Image pull progress aggregation."""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dockhand.core.errors import PullError
from dockhand.core.logger import get_logger

logger = get_logger(__name__)

UP_TO_DATE_MARKER = "Image is up to date"

ProgressCallback = Callable[[Dict[str, "LayerStatus"]], None]


@dataclass
class LayerStatus:
    """In-flight state of one image layer."""

    status: str
    current: int
    total: int

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 0.0

    @property
    def progress(self) -> str:
        return f"{self.current}/{self.total}"

    def __str__(self) -> str:
        return f"{self.status} layer: {self.progress}"


class PullProgress:
    """Track per-layer pull status and report the in-flight layers.

    Feed every event of a pull stream to ``feed()``. Layers reporting
    ``current == total``, or a status without progress detail ("Pull
    complete", "Already exists"...), are dropped from the map. Whenever
    layers remain in flight afterwards, the callback receives a copy of the
    map keyed by layer id.
    """

    def __init__(self, on_progress: Optional[ProgressCallback] = None):
        self.on_progress = on_progress
        self.layers: Dict[str, LayerStatus] = {}
        self.final_status: str = ""
        self.events = 0

    def feed(self, event: Dict[str, Any]) -> None:
        self.events += 1

        if event.get("error"):
            detail = event.get("errorDetail") or {}
            raise PullError(detail.get("message") or event["error"])

        status = event.get("status", "")
        layer_id = event.get("id")

        if not layer_id:
            # Stream-level lines: "Pulling from ...", "Digest: ...", "Status: ..."
            if status:
                self.final_status = status
            return

        detail = event.get("progressDetail") or {}
        current = detail.get("current")
        total = detail.get("total")

        if current is None or not total or current >= total:
            self.layers.pop(layer_id, None)
        else:
            self.layers[layer_id] = LayerStatus(status=status, current=int(current), total=int(total))

        if self.layers and self.on_progress:
            self.on_progress(dict(self.layers))

    @property
    def up_to_date(self) -> bool:
        """True when the pull ended with the engine's up-to-date status line."""
        return UP_TO_DATE_MARKER in self.final_status

    def describe(self) -> str:
        """One line per in-flight layer, for status messages."""
        return "\n".join(str(layer) for layer in self.layers.values())
