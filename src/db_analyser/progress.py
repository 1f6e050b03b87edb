"""Progress reporting for analysis runs."""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """One finished step of a run."""
    step: str
    current: int
    total: int
    percentage: float
    status: str = "completed"


ProgressSink = Callable[[ProgressEvent], None]


class ProgressTracker:
    """Emits ordered, strictly increasing progress events to an optional sink.

    Steps may finish on different worker threads; the counter and the call
    into the sink happen under one lock so consumers observe events in
    ``current`` order.
    """

    def __init__(self, total: int, sink: Optional[ProgressSink] = None):
        self.total = max(total, 1)
        self.current = 0
        self._sink = sink
        self._lock = threading.Lock()

    def step_done(self, step: str, status: str = "completed"):
        with self._lock:
            self.current += 1
            if self._sink is None:
                return
            event = ProgressEvent(
                step=step,
                current=self.current,
                total=self.total,
                percentage=round(self.current * 100.0 / self.total, 1),
                status=status,
            )
            try:
                self._sink(event)
            except Exception:
                logger.warning(f"Progress sink failed for step '{step}'", exc_info=True)
