"""
Progress reporting and cooperative cancellation for optimization runs.
"""

import logging
import math
import threading
from typing import Callable, Optional

from liqtune.core.exceptions import OptimizationCancelled

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

DEFAULT_LABEL = "Working..."


class ProgressReporter:
    """Emits a monotonic 0-100 percentage with a stage label.

    A reporter can be narrowed to a sub-range of its parent with `span()`, so
    per-symbol stages map into the symbol's slice of the overall run.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        start: float = 0.0,
        end: float = 100.0,
        parent: Optional["ProgressReporter"] = None,
    ):
        self.callback = callback
        self.start = start
        self.end = end
        self.parent = parent
        self.last = 0.0

    def span(self, start: float, end: float) -> "ProgressReporter":
        """Child reporter whose 0-100 maps onto [start, end] of this one."""
        return ProgressReporter(start=start, end=end, parent=self)

    def emit(self, percent: float, stage: str = "") -> None:
        if percent is None or not math.isfinite(percent):
            return
        local = min(100.0, max(0.0, percent))
        scaled = self.start + (self.end - self.start) * local / 100.0
        label = stage.strip() if isinstance(stage, str) and stage.strip() else DEFAULT_LABEL
        if self.parent is not None:
            self.parent.emit(scaled, label)
            return
        self._deliver(scaled, label)

    def _deliver(self, percent: float, label: str) -> None:
        percent = max(self.last, min(100.0, max(0.0, percent)))
        self.last = percent
        if self.callback is None:
            logger.debug(f"[progress {percent:.2f}] {label}")
            return
        try:
            self.callback(percent, label)
        except Exception as e:
            # A broken UI listener must not stop the search
            logger.warning(f"Progress callback failed: {e}")


class CancellationToken:
    """Checked between stages and between symbols, never mid-simulation."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            detail = f" before {where}" if where else ""
            raise OptimizationCancelled(f"Optimization {self.reason}{detail}")
