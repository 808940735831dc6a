"""
Alignment Controller

Runs fiducial and dense alignment on a dedicated worker thread and coalesces
bursts of requests so that interactive input (a fiducial dragged every frame)
never builds a backlog.

Per channel the controller keeps a small state machine, IDLE -> COMPUTING ->
IDLE, guarded by a lock:
- A request arriving while IDLE starts a computation.
- A request arriving while COMPUTING only replaces the latest request data and
  bumps the pending counter.
- When a computation finishes and more requests arrived meanwhile, exactly one
  more computation is issued, on the latest request data.

Requests reach the worker through a queue.Queue mailbox; results come back on
a result queue (and, optionally, a callback run on the worker thread). Callers
never block on a computation.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

import numpy as np

from .correspondence_search import CorrespondenceMapping, CorrespondenceSearch
from .fine_registration import ICPRefinementEngine, ICPResult
from .transform_io import format_transform
from ..acceleration.gpu_context import GPUContext
from ..exceptions import RegistrationError
from ..utils.config import AppConfig
from ..utils.point_cloud import as_points, extract_xyz_vertices
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

EngineFactory = Callable[[GPUContext], ICPRefinementEngine]
ResultCallback = Callable[["AlignmentResult"], None]


class Channel(str, Enum):
    FIDUCIAL = "fiducial"
    DENSE = "dense"


@dataclass
class AlignmentRequest:
    """Read-only snapshot of one alignment request."""

    channel: Channel
    source: np.ndarray
    target: np.ndarray
    generation: int
    source_cloud: Optional[np.ndarray] = None
    target_cloud: Optional[np.ndarray] = None


@dataclass
class AlignmentResult:
    """
    Outcome of one computation.

    Attributes:
        channel: Channel the computation ran on.
        generation: Generation of the request whose data was used.
        transform: Resolved 4x4 source -> target transform.
        error: Correspondence residual (fiducial) or ICP fitness (dense).
        converged: False when no mapping was possible or ICP did not converge.
        mapping: Fiducial correspondence, when one was searched.
        icp: ICP outcome on the dense channel.
        failure: Message of a request-level error; transform is identity then.
    """

    channel: Channel
    generation: int
    transform: np.ndarray = field(default_factory=lambda: np.eye(4))
    error: float = float("inf")
    converged: bool = False
    mapping: Optional[CorrespondenceMapping] = None
    icp: Optional[ICPResult] = None
    failure: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class _ChannelState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    computing: bool = False
    pending: int = 0
    latest: Optional[AlignmentRequest] = None
    computations: int = 0


def _snapshot(points) -> np.ndarray:
    arr = np.array(as_points(points), dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


class AlignmentController:
    """
    Coalescing front end for CorrespondenceSearch and ICPRefinementEngine.

    Example:
        >>> with AlignmentController() as controller:
        ...     controller.set_source_scan(source_grid)
        ...     controller.set_target_scan(target_grid)
        ...     controller.submit_dense(source_fiducials, target_fiducials)
        ...     result = controller.get_result(timeout=30.0)
    """

    _STOP = object()

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        search: Optional[CorrespondenceSearch] = None,
        engine_factory: Optional[EngineFactory] = None,
        on_result: Optional[ResultCallback] = None,
    ):
        """
        Args:
            config: Application configuration; defaults to AppConfig().
            search: Fiducial search; built from `config.correspondence` when omitted.
            engine_factory: Builds the refinement engine on the worker thread
                from the worker's GPU context.
            on_result: Called on the worker thread with every result.
        """
        self.config = config or AppConfig()
        self.search = search or CorrespondenceSearch(
            tie_tolerance=self.config.correspondence.tie_tolerance,
            max_points=self.config.correspondence.max_points,
        )
        self._engine_factory = engine_factory or self._default_engine
        self.on_result = on_result

        self._states: Dict[Channel, _ChannelState] = {ch: _ChannelState() for ch in Channel}
        self._mailbox: "queue.Queue" = queue.Queue()
        self._results: "queue.Queue[AlignmentResult]" = queue.Queue(maxsize=self.config.controller.result_queue_size)
        self._generation = 0
        self._generation_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._source_cloud: Optional[np.ndarray] = None
        self._target_cloud: Optional[np.ndarray] = None

        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self.context: Optional[GPUContext] = None
        self.engine: Optional[ICPRefinementEngine] = None

    def _default_engine(self, context: GPUContext) -> ICPRefinementEngine:
        cfg = self.config
        return ICPRefinementEngine(
            cfg.icp,
            context=context,
            use_gpu_neighbors=cfg.gpu.enabled and cfg.gpu.use_for_neighbors,
            proximity_levels=cfg.proximity.levels,
            proximity_padding=cfg.proximity.padding,
        )

    # ------------------------ Lifecycle ------------------------
    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "AlignmentController":
        if self.is_running:
            return self
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, name="alignment-worker", daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.debug("Alignment worker started")
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        """Finish queued computations and join the worker."""
        if self._thread is None:
            return
        self._mailbox.put(self._STOP)
        self._thread.join(self.config.controller.join_timeout if timeout is None else timeout)
        if self._thread.is_alive():
            logger.warning("Alignment worker did not stop within the timeout")
        else:
            logger.debug("Alignment worker stopped")
        self._thread = None

    def __enter__(self) -> "AlignmentController":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------ Caller side ------------------------
    def set_source_scan(self, points_or_grid) -> None:
        """Store a read-only snapshot of the dense source cloud (points or scan grid)."""
        cloud = self._dense_snapshot(points_or_grid)
        with self._scan_lock:
            self._source_cloud = cloud

    def set_target_scan(self, points_or_grid) -> None:
        """Store a read-only snapshot of the dense target cloud (points or scan grid)."""
        cloud = self._dense_snapshot(points_or_grid)
        with self._scan_lock:
            self._target_cloud = cloud

    def _dense_snapshot(self, points_or_grid) -> np.ndarray:
        arr = np.asarray(points_or_grid, dtype=np.float64)
        if arr.ndim == 3:
            arr = extract_xyz_vertices(arr, self.config.controller.scan_downsample_factor)
        return _snapshot(arr)

    def submit(self, channel: Channel, source, target) -> int:
        """
        Queue an alignment request; returns its generation immediately.

        Raises:
            RuntimeError: If the controller has not been started.
        """
        if not self.is_running:
            raise RuntimeError("AlignmentController is not running; call start() first")

        channel = Channel(channel)
        with self._generation_lock:
            self._generation += 1
            generation = self._generation

        source_cloud = target_cloud = None
        if channel is Channel.DENSE:
            with self._scan_lock:
                source_cloud, target_cloud = self._source_cloud, self._target_cloud

        request = AlignmentRequest(
            channel=channel,
            source=_snapshot(source),
            target=_snapshot(target),
            generation=generation,
            source_cloud=source_cloud,
            target_cloud=target_cloud,
        )

        state = self._states[channel]
        with state.lock:
            state.latest = request
            state.pending += 1
            if state.computing:
                logger.debug("%s request %d coalesced (%d pending)", channel.value, generation, state.pending)
                return generation
            state.computing = True

        self._mailbox.put(channel)
        return generation

    def submit_fiducials(self, source, target) -> int:
        return self.submit(Channel.FIDUCIAL, source, target)

    def submit_dense(self, source_fiducials, target_fiducials) -> int:
        return self.submit(Channel.DENSE, source_fiducials, target_fiducials)

    def get_result(self, timeout: Optional[float] = None) -> AlignmentResult:
        """Next result; raises queue.Empty when none arrives within `timeout`."""
        return self._results.get(timeout=timeout)

    def is_busy(self, channel: Channel) -> bool:
        state = self._states[Channel(channel)]
        with state.lock:
            return state.computing

    def computations(self, channel: Channel) -> int:
        """Number of computations completed on a channel."""
        state = self._states[Channel(channel)]
        with state.lock:
            return state.computations

    # ------------------------ Worker side ------------------------
    def _run(self) -> None:
        # GPU state must be created on the thread that uses it
        try:
            self.context = GPUContext(
                use_gpu=self.config.gpu.enabled and self.config.gpu.use_for_proximity,
                name="alignment",
            )
            self.engine = self._engine_factory(self.context)
        finally:
            self._ready.set()

        while True:
            message = self._mailbox.get()
            if message is self._STOP:
                break
            self._process(message)

    def _process(self, channel: Channel) -> None:
        state = self._states[channel]
        with state.lock:
            request = state.latest

        start = time.time()
        try:
            result = self._compute(request)
        except RegistrationError as e:
            logger.warning("%s alignment %d unavailable: %s", channel.value, request.generation, e)
            result = AlignmentResult(channel=channel, generation=request.generation, failure=str(e))
        except Exception as e:
            logger.exception("%s alignment %d failed", channel.value, request.generation)
            result = AlignmentResult(
                channel=channel,
                generation=request.generation,
                failure=f"{type(e).__name__}: {e}",
            )
        logger.debug("%s alignment %d took %.4f s", channel.value, request.generation, time.time() - start)

        with state.lock:
            state.computations += 1
            reissue = state.pending > 1
            if reissue:
                # The re-issued computation is the one now in flight
                state.pending = 1
            else:
                state.pending = 0
                state.computing = False

        self._deliver(result)
        if reissue:
            self._mailbox.put(channel)

    def _deliver(self, result: AlignmentResult) -> None:
        # A consumer may drain the queue between the two calls below
        while True:
            try:
                self._results.put_nowait(result)
                break
            except queue.Full:
                try:
                    dropped = self._results.get_nowait()
                except queue.Empty:
                    continue
                logger.debug("Result queue full; dropped %s result %d", dropped.channel.value, dropped.generation)

        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                logger.exception("Result callback raised")

    def _compute(self, request: AlignmentRequest) -> AlignmentResult:
        """Run one computation on the worker thread."""
        if request.channel is Channel.FIDUCIAL:
            return self._compute_fiducial(request)
        return self._compute_dense(request)

    def _compute_fiducial(self, request: AlignmentRequest) -> AlignmentResult:
        mapping = self.search.search(request.source, request.target)
        if mapping.is_empty:
            logger.info("Fiducial alignment %d unavailable: fewer than three fiducials", request.generation)
        elif mapping.ambiguous:
            logger.warning(
                "Fiducial alignment %d is ambiguous: %d candidate mappings tie at error %.6e",
                request.generation,
                mapping.tie_count,
                mapping.error,
            )
        else:
            logger.debug("Fiducial alignment %d:\n%s", request.generation, format_transform(mapping.transform))

        return AlignmentResult(
            channel=request.channel,
            generation=request.generation,
            transform=mapping.transform.copy(),
            error=mapping.error,
            converged=not mapping.is_empty,
            mapping=mapping,
        )

    def _compute_dense(self, request: AlignmentRequest) -> AlignmentResult:
        if request.source_cloud is None or request.target_cloud is None:
            raise RegistrationError("Dense alignment needs both source and target scans")

        mapping = self.search.search(request.source, request.target)
        initial = mapping.transform.copy()
        if mapping.is_empty:
            logger.info("Dense alignment %d starts from identity (no fiducial mapping)", request.generation)

        icp = self.engine.refine(request.source_cloud, request.target_cloud, initial)
        if not icp.converged:
            logger.warning(
                "Dense alignment %d did not converge after %d iterations (fitness %.6f)",
                request.generation,
                icp.n_iterations,
                icp.fitness,
            )

        return AlignmentResult(
            channel=request.channel,
            generation=request.generation,
            transform=icp.transform,
            error=icp.fitness,
            converged=icp.converged,
            mapping=mapping,
            icp=icp,
        )
