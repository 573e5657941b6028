# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Implementation of the JobQueue."""
import collections
import logging
import os
import threading
import types
import typing

# Implementation depends upon an explicit subset of multiprocessing.
from multiprocessing import get_context
from multiprocessing.context import BaseContext

from .channel import Codec, IdleGate, PickleCodec
from .detector import CompletionDetector, WatcherDetector
from .errors import AlreadyStarted, JobError, ReapError, SpawnError
from .worker import Info, Worker, noop

T = typing.TypeVar("T")

_LOGGER = logging.getLogger(__name__)


class JobQueue:
    """
    Runs enqueued jobs in separate processes, at most capacity at a time.

    Jobs are add(...)-ed, then start(...) activates them in FIFO order.
    Each completion frees exactly one slot which is refilled at most once.
    Once no job is pending or active, the queue is idle and any
    wait_until_idle(...) caller is released.

    All bookkeeping happens while holding a single lock.  That lock is
    held across the whole finish, collect, refill, maybe-release sequence
    including the process spawn within refill, which is expected to be
    quick.  Completion detectors never hold their own locks while
    reporting so they keep draining further exits meanwhile.

    Jobs cannot be added after start(...) and doing so raises
    AlreadyStarted.  No timeouts are applied: a job that hangs occupies
    its slot indefinitely.
    """

    __slots__ = (
        "_context",
        "_detector",
        "_codec",
        "_liveness",
        "_lock",
        "_workers",
        "_pending",
        "_active",
        "_finished",
        "_capacity",
        "_started",
        "_idle",
        "_fatal",
        "_peak",
        "_next_ident",
    )

    def __init__(
        self,
        context: typing.Union[None, str, BaseContext] = None,
        detector: typing.Optional[CompletionDetector] = None,
        codec: typing.Optional[Codec] = None,
        liveness: bool = False,
    ) -> None:
        """
        Wrap some multiprocessing context and a CompletionDetector.

        When not provided, context defaults to multiprocessing.get_context().
        When not provided, detector defaults to a WatcherDetector.
        When not provided, codec defaults to a PickleCodec.
        When liveness is True, workers exit should this process vanish.
        """
        self._context = (
            get_context(context)
            if context is None or isinstance(context, str)
            else context
        )
        self._detector = WatcherDetector() if detector is None else detector
        self._codec = PickleCodec() if codec is None else codec
        assert isinstance(liveness, bool), type(liveness)
        self._liveness = liveness

        # Guards everything below
        self._lock = threading.Lock()
        self._workers = {}  # type: typing.Dict[typing.Hashable, Worker]
        self._pending = collections.deque()  # type: typing.Deque[Worker]
        self._active = {}  # type: typing.Dict[typing.Hashable, Worker]
        self._finished = {}  # type: typing.Dict[typing.Hashable, Worker]
        self._capacity = 0
        self._started = False
        self._idle = IdleGate()
        self._fatal = []  # type: typing.List[ReapError]
        self._peak = 0
        self._next_ident = 0

    def __copy__(self) -> typing.NoReturn:
        """Disallow copying as duplicates cannot sensibly share processes."""
        raise NotImplementedError("JobQueues cannot be copied.")

    def __reduce__(self) -> typing.NoReturn:
        """Disallow pickling as duplicates cannot sensibly share processes."""
        raise NotImplementedError("JobQueues cannot be pickled.")

    def __call__(
        self, fn: typing.Callable[..., T], *args, **kwargs
    ) -> typing.Hashable:
        """Add running fn(*args, **kwargs) to this JobQueue.

        Shorthand for calling add(fn=fn, args=*args, kwargs=**kwargs),
        with all other semantics per that method's default arguments.
        """
        return self.add(fn=fn, args=args, kwargs=kwargs)

    def add(
        self,
        fn: typing.Callable[..., T],
        *,
        args: typing.Iterable = (),
        kwargs: typing.Mapping[str, typing.Any] = types.MappingProxyType({}),
        label: typing.Optional[typing.Hashable] = None,
        env: typing.Iterable = (),  # Iterable[Tuple[str,str]] breaks!
        preexec_fn: typing.Callable[[], None] = noop
    ) -> typing.Hashable:
        """Add running fn(*args, **kwargs) returning the job's identity.

        The identity is label, which must be unique, when provided.
        Otherwise, the identity is the next unused sequential integer.
        When env provided, child updates os.environ unsetting None-valued keys.
        When preexec_fn provided, child calls it just before fn(...).
        Raises AlreadyStarted once start(...) has been called.
        """
        with self._lock:
            if self._started:
                raise AlreadyStarted("Cannot add jobs after start(...)")
            if label is None:
                while self._next_ident in self._workers:
                    self._next_ident += 1
                ident = self._next_ident  # type: typing.Hashable
            elif label in self._workers:
                raise ValueError("Duplicate job label {!r}".format(label))
            else:
                ident = label
            worker = Worker(
                ident=ident,
                fn=fn,
                args=args,
                kwargs=kwargs,
                env=env,
                preexec_fn=preexec_fn,
            )  # type: Worker
            self._workers[ident] = worker
            self._pending.append(worker)
        return ident

    def start(self, capacity: typing.Optional[int] = None) -> None:
        """
        Activate up to capacity jobs with the rest following as slots free.

        When not provided, capacity defaults to len(os.sched_getaffinity(0))
        which reports the number of usable CPUs for the current process.
        Returns once all jobs have completed when the CompletionDetector is
        synchronous and otherwise returns after activating the first jobs.
        """
        if capacity is None:
            capacity = len(os.sched_getaffinity(0))  # Not cpu_count()!
        if (
            not isinstance(capacity, int)
            or isinstance(capacity, bool)
            or capacity < 1
        ):
            raise ValueError("Bad capacity {!r}".format(capacity))

        with self._lock:
            if self._started:
                raise AlreadyStarted("JobQueue.start(...) already called")
            self._detector.open(self._on_worker_finished, self._context)
            self._started = True
            self._capacity = capacity
            _LOGGER.debug(
                "Starting %d jobs with capacity %d",
                len(self._pending),
                capacity,
            )
            self._fill(capacity)
            self._maybe_idle()

        self._detector.drive()
        if self._idle.released():
            self._raise_fatal()

    def finished(self) -> bool:
        """Has this JobQueue started and become idle?  Never blocks."""
        return self._idle.released()

    def wait_until_idle(self, timeout: typing.Optional[float] = None) -> bool:
        """
        Block until no job is pending or active.  Returns False on timeout.

        Timeout is given in seconds with None meaning to block indefinitely.
        Idle says nothing about success as every job might have errored.
        Raises the first ReapError seen, if any, once idle.  Blocks until
        some other thread calls start(...) if it has not yet been called.
        """
        if not self._idle.wait(timeout=timeout):
            return False
        self._raise_fatal()
        return True

    def get_info(self, ident: typing.Hashable) -> Info:
        """Snapshot the job known by ident, raising KeyError if unknown."""
        with self._lock:
            return self._workers[ident].info()

    @property
    def capacity(self) -> int:
        """Capacity given to start(...) or zero beforehand."""
        return self._capacity

    @property
    def pending_jobs(self) -> typing.Tuple[Worker, ...]:
        """Jobs not yet activated in the order they will be activated."""
        with self._lock:
            return tuple(self._pending)

    @property
    def active_jobs(self) -> typing.Tuple[Worker, ...]:
        """Jobs whose processes are running."""
        with self._lock:
            return tuple(self._active.values())

    @property
    def finished_jobs(self) -> typing.Dict[typing.Hashable, Worker]:
        """Jobs, whether successful or not, that are done."""
        with self._lock:
            return dict(self._finished)

    @property
    def peak_active(self) -> int:
        """The most jobs that were ever simultaneously active."""
        with self._lock:
            return self._peak

    def _on_worker_finished(self, worker: Worker) -> None:
        """Invoked by the CompletionDetector once per activated Worker."""
        with self._lock:
            self._finish(worker)
            self._fill(1)
            self._maybe_idle()

    def _finish(self, worker: Worker) -> None:
        """Collect worker and move it from active to finished."""
        active = self._active.pop(worker.ident, None)
        assert active is worker, "Not active"
        assert worker.ident not in self._finished, "Already finished"
        try:
            worker.collect()
        except JobError as e:
            _LOGGER.warning("Job %r failed: %s", worker.ident, e)
        except ReapError as e:
            _LOGGER.error("Internal consistency violated: %s", e)
            self._fatal.append(e)
        self._finished[worker.ident] = worker

    def _fill(self, slots: int) -> None:
        """Activate up to slots pending jobs, skipping any failing to spawn."""
        while slots > 0 and self._pending:
            worker = self._pending.popleft()
            try:
                worker.activate(self._context, self._codec, self._liveness)
            except SpawnError as e:
                _LOGGER.warning("%s", e)
                self._finished[worker.ident] = worker
                continue
            self._active[worker.ident] = worker
            self._peak = max(self._peak, len(self._active))
            assert len(self._active) <= self._capacity, "Capacity exceeded"
            self._detector.track(worker)
            slots -= 1

    def _maybe_idle(self) -> None:
        """Release the idle gate, exactly once, when nothing remains."""
        if self._pending or self._active:
            return
        if self._idle.release():
            _LOGGER.debug("Idle after %d jobs", len(self._finished))
            self._detector.close()

    def _raise_fatal(self) -> None:
        if self._fatal:
            raise self._fatal[0]
