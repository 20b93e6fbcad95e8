"""
Background pose graph optimization.

Runs the pure solver on graph snapshots in a separate thread. The engine
submits snapshots and polls for results between frames, so corrected poses
are only ever applied on the caller's thread.
"""

import logging
import queue
import threading
from typing import Optional

from .optimizer import optimize_pose_graph
from .pose_graph import PoseGraphSnapshot
from ..core.errors import OptimizationDidNotConverge
from ..types import OptimizationResult

logger = logging.getLogger(__name__)


class PoseGraphWorker:
    """
    Background optimization thread.

    Only the most recent submission matters: a request that is still queued
    when a newer one arrives is dropped.
    """

    def __init__(self, max_iterations: int = 100, tolerance: float = 1e-6):
        """
        Args:
            max_iterations: Solver iteration cap
            tolerance: Solver relative tolerance
        """
        self.max_iterations = max_iterations
        self.tolerance = tolerance

        # Threading
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._request_queue: queue.Queue = queue.Queue(maxsize=1)
        self._result_queue: queue.Queue = queue.Queue()
        # Set from submission until the result is published
        self._busy = False
        self._lock = threading.Lock()

        # Statistics
        self.jobs_completed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def start(self):
        """Start background thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, name="pose-graph-worker", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop background thread."""
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

    def submit(self, snapshot: PoseGraphSnapshot, anchor_id: int):
        """Queue a snapshot for optimization, replacing any pending one."""
        with self._lock:
            try:
                self._request_queue.get_nowait()
                logger.debug("Dropped stale pose graph request")
            except queue.Empty:
                pass
            self._request_queue.put((snapshot, anchor_id))
            self._busy = True

    def poll(self) -> Optional[OptimizationResult]:
        """Latest finished result, or None."""
        result = None
        while True:
            try:
                result = self._result_queue.get_nowait()
            except queue.Empty:
                return result

    def wait(self, timeout: Optional[float] = None) -> Optional[OptimizationResult]:
        """Block until a result is available."""
        try:
            return self._result_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def _solve(self, snapshot: PoseGraphSnapshot, anchor_id: int) -> OptimizationResult:
        try:
            return optimize_pose_graph(
                snapshot.nodes, snapshot.edges, anchor_id,
                max_iterations=self.max_iterations,
                tolerance=self.tolerance
            )
        except OptimizationDidNotConverge as e:
            logger.warning("Background pose graph optimization failed: %s", e)
            return OptimizationResult(
                poses=snapshot.nodes,
                success=False,
                num_iterations=e.num_iterations,
                initial_error=float('nan'),
                final_error=e.final_error,
                message=str(e)
            )

    def _run_loop(self):
        """Main worker loop."""
        while self._running:
            try:
                snapshot, anchor_id = self._request_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            result = self._solve(snapshot, anchor_id)
            with self._lock:
                self.jobs_completed += 1
                self._result_queue.put(result)
                self._busy = not self._request_queue.empty()
