# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""
Detecting which active Workers have completed.

A JobQueue depends only upon the CompletionDetector interface.  Three
implementations are provided:

 * ReadinessDetector blocks the caller of JobQueue.start(...) on
   multiprocessing.connection.wait(...) over all active result channels
   until the queue is idle.  No threads and no signals are involved.
 * WatcherDetector spins up one lightweight thread per active Worker.
   Each thread waits for its Worker's result channel to become readable.
   JobQueue.start(...) returns immediately.  This is the default.
 * SignalDetector handles SIGCHLD, chained with any prior handler, and
   hands each notification to a single dispatcher thread which also
   watches every active result channel.  Requires the
   "fork" or "spawn" start method so that workers are direct children.

Whatever the implementation, on_finished(...) is invoked exactly once per
tracked Worker in no particular order.
"""
import abc
import logging
import os
import signal
import threading
import typing

from multiprocessing.connection import Connection, wait
from multiprocessing.context import BaseContext

from .worker import Worker

_LOGGER = logging.getLogger(__name__)


OnFinished = typing.Callable[[Worker], None]


class CompletionDetector(abc.ABC):
    """Maps process completions onto JobQueue notifications."""

    __slots__ = ()

    @abc.abstractmethod
    def open(self, on_finished: OnFinished, context: BaseContext) -> None:
        """Prepare to report completions via on_finished(worker)."""
        raise NotImplementedError()

    @abc.abstractmethod
    def track(self, worker: Worker) -> None:
        """
        Begin watching a just-activated Worker.

        Invoked while the JobQueue holds its lock so implementations must
        not call on_finished(...) from within this method.
        """
        raise NotImplementedError()

    def drive(self) -> None:
        """
        Run any detection loop the caller must drive itself.

        Asynchronous implementations return immediately.  Synchronous ones
        return only after every tracked Worker has been reported.
        """
        return None

    @abc.abstractmethod
    def close(self) -> None:
        """Release resources once the JobQueue has become idle."""
        raise NotImplementedError()


class ReadinessDetector(CompletionDetector):
    """Synchronous detection by waiting on readable result channels."""

    __slots__ = ("_on_finished", "_tracked")

    def __init__(self) -> None:
        self._on_finished = None  # type: typing.Optional[OnFinished]
        self._tracked = {}  # type: typing.Dict[Connection, Worker]

    def open(self, on_finished: OnFinished, context: BaseContext) -> None:
        self._on_finished = on_finished

    def track(self, worker: Worker) -> None:
        self._tracked[worker.reader] = worker

    def drive(self) -> None:
        assert self._on_finished is not None, "Not opened"
        # Never wait(...) on nothing as that would block indefinitely
        while self._tracked:
            for reader in wait(tuple(self._tracked.keys())):
                # Reporting may track replacement Workers in self._tracked
                worker = self._tracked.pop(reader)  # type: ignore
                self._on_finished(worker)

    def close(self) -> None:
        assert not self._tracked, "Closed while Workers remain"


class WatcherDetector(CompletionDetector):
    """Asynchronous detection with one waiting thread per Worker."""

    __slots__ = ("_on_finished",)

    def __init__(self) -> None:
        self._on_finished = None  # type: typing.Optional[OnFinished]

    def open(self, on_finished: OnFinished, context: BaseContext) -> None:
        self._on_finished = on_finished

    def track(self, worker: Worker) -> None:
        thread = threading.Thread(
            target=self._watch,
            args=(worker, worker.reader),
            daemon=True,
            name="jobqueue-watcher-{}".format(worker.pid),
        )
        thread.start()

    def _watch(self, worker: Worker, reader: Connection) -> None:
        # Readable means either a result frame or the child hanging up
        wait((reader,))
        assert self._on_finished is not None
        self._on_finished(worker)

    def close(self) -> None:
        pass


class SignalChain:
    """
    A single handler for one signal dispatching to many subscribers.

    Whatever handler was installed beforehand is invoked after all
    subscribers so that other users of the same signal keep working.
    Installation must happen on the main thread, as signal.signal(...)
    requires.  Removal only happens on the main thread, too, and otherwise
    a pass-through handler remains installed.
    """

    __slots__ = ("signum", "_callbacks", "_previous", "_installed", "_lock")

    def __init__(self, signum: int) -> None:
        self.signum = signum
        # Replaced, never mutated, so a handler iterates a stable snapshot
        self._callbacks = ()  # type: typing.Tuple[typing.Callable, ...]
        self._previous = None  # type: typing.Any
        self._installed = False
        self._lock = threading.Lock()

    def subscribe(self, callback: typing.Callable) -> None:
        """Invoke callback(signum, frame) whenever the signal arrives."""
        with self._lock:
            if not self._installed:
                self._previous = signal.signal(self.signum, self._handle)
                self._installed = True
            self._callbacks = self._callbacks + (callback,)

    def unsubscribe(self, callback: typing.Callable) -> None:
        """Stop invoking callback, restoring the prior handler if possible."""
        with self._lock:
            self._callbacks = tuple(
                c for c in self._callbacks if c != callback
            )
            if (
                self._callbacks
                or not self._installed
                or threading.current_thread() is not threading.main_thread()
                or signal.getsignal(self.signum) != self._handle
            ):
                return
            previous, self._previous = self._previous, None
            signal.signal(
                self.signum, signal.SIG_DFL if previous is None else previous
            )
            self._installed = False

    @property
    def subscribers(self) -> int:
        return len(self._callbacks)

    def _handle(self, signum: int, frame: typing.Any) -> None:
        # Must not acquire self._lock as the interrupted frame may hold it
        for callback in self._callbacks:
            callback(signum, frame)
        previous = self._previous
        if callable(previous):
            previous(signum, frame)


# One chain per process because only one SIGCHLD handler can be installed.
CHILD_SIGNALS = SignalChain(signal.SIGCHLD)


class SignalDetector(CompletionDetector):
    """
    Asynchronous detection driven by SIGCHLD and result readiness.

    The handler only writes a wake-up byte to a non-blocking self-pipe,
    which is safe to do from a signal handler.  A dispatcher thread waits
    on that pipe together with every tracked result channel and then checks
    every tracked Worker because one SIGCHLD may announce many exits.
    Exits are observed with WNOWAIT so that reaping remains the
    responsibility of Worker.collect().

    A readable result channel also counts as completion.  Results larger
    than the pipe capacity keep their child from exiting until they are
    read, so waiting for SIGCHLD alone would never report such Workers.
    """

    __slots__ = (
        "_chain",
        "_on_finished",
        "_tracked",
        "_lock",
        "_stopping",
        "_wake_reader",
        "_wake_writer",
        "_thread",
    )

    def __init__(self, chain: typing.Optional[SignalChain] = None) -> None:
        self._chain = CHILD_SIGNALS if chain is None else chain
        self._on_finished = None  # type: typing.Optional[OnFinished]
        # Keyed by result channel as a pid may be reused once reaped
        self._tracked = {}  # type: typing.Dict[Connection, Worker]
        self._lock = threading.Lock()
        self._stopping = False
        self._wake_reader, self._wake_writer = os.pipe()
        os.set_blocking(self._wake_writer, False)
        self._thread = None  # type: typing.Optional[threading.Thread]

    def __del__(self) -> None:
        for name in ("_wake_reader", "_wake_writer"):
            fd = getattr(self, name, None)
            if fd is not None:
                try:
                    os.close(fd)
                except OSError:
                    pass

    def open(self, on_finished: OnFinished, context: BaseContext) -> None:
        method = context.get_start_method()
        if method not in ("fork", "spawn"):
            raise ValueError(
                "SignalDetector requires fork or spawn, not {}".format(method)
            )
        self._on_finished = on_finished
        self._chain.subscribe(self._notify)
        self._thread = threading.Thread(
            target=self._dispatch, daemon=True, name="jobqueue-reaper"
        )
        self._thread.start()

    def _notify(self, signum: int, frame: typing.Any) -> None:
        self._wake()

    def _wake(self) -> None:
        try:
            os.write(self._wake_writer, b"\0")
        except BlockingIOError:
            pass  # Full, so a wake-up is already pending

    def track(self, worker: Worker) -> None:
        assert worker.pid is not None
        with self._lock:
            assert worker.reader not in self._tracked, "Already tracked"
            self._tracked[worker.reader] = worker
        # Refreshes the dispatcher's set of channels, too
        self._wake()

    def close(self) -> None:
        self._chain.unsubscribe(self._notify)
        with self._lock:
            self._stopping = True
        self._wake()

    def _dispatch(self) -> None:
        assert self._on_finished is not None
        while True:
            with self._lock:
                if self._stopping:
                    return
                readers = list(self._tracked.keys())
            ready = wait([self._wake_reader] + readers)  # type: ignore
            if self._wake_reader in ready:
                # Coalesce every pending wake-up into a single drain
                os.read(self._wake_reader, 4096)
            for worker in self.drain():
                self._on_finished(worker)

    def drain(self) -> typing.List[Worker]:
        """Untrack and return every tracked Worker that has completed."""
        finished = []
        with self._lock:
            ready = set(wait(tuple(self._tracked.keys()), timeout=0))
            for reader, worker in tuple(self._tracked.items()):
                if reader in ready or self._exited(worker):
                    finished.append(self._tracked.pop(reader))
        return finished

    @staticmethod
    def _exited(worker: Worker) -> bool:
        assert worker.pid is not None
        try:
            status = os.waitid(
                os.P_PID, worker.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT
            )
        except ChildProcessError:
            # Reaped elsewhere, e.g. by multiprocessing's cleanup of
            # finished children which caches the status, and so
            # collect() decides whether anything was lost.
            _LOGGER.debug("Pid %d already reaped", worker.pid)
            return True
        return status is not None and status.si_pid != 0
