# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""A Worker binds one job to one process and its channels."""
import enum
import logging
import os
import signal
import sys
import threading
import traceback
import types
import typing

from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from multiprocessing.process import BaseProcess

from .channel import Codec, Err, Ok, ResultChannel, Wrapper, send_frame
from .errors import (
    DecodeError,
    JobPanic,
    ReapError,
    SpawnError,
    WorkerDied,
)
from .liveness import LivenessChannel, watch_parent

T = typing.TypeVar("T")

_LOGGER = logging.getLogger(__name__)

# Serializes Worker.activate(...) across every JobQueue in this process
_SPAWNING = threading.Lock()


def _reset_spawning() -> None:
    # A forked child may have copied the lock while its parent held it
    global _SPAWNING
    _SPAWNING = threading.Lock()


os.register_at_fork(after_in_child=_reset_spawning)


# Appears as a default argument to simplify some logic.
def noop(*args, **kwargs) -> None:
    """A "do nothing" function conforming to (the rejected) PEP-559."""
    return None


class State(enum.Enum):
    """Lifecycle of a job.  Transitions never revisit a prior state."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    ERRORED = "errored"


_TRANSITIONS = {
    State.PENDING: (State.RUNNING, State.ERRORED),
    State.RUNNING: (State.FINISHED, State.ERRORED),
    State.FINISHED: (),
    State.ERRORED: (),
}


class Info(typing.NamedTuple):
    """Snapshot of one job as reported by JobQueue.get_info(...)."""

    ident: typing.Hashable
    state: State
    pid: typing.Optional[int]
    result: typing.Any
    error: typing.Optional[Exception]

    @property
    def message(self) -> typing.Optional[str]:
        """Human-readable description of any error."""
        return None if self.error is None else str(self.error)


class Worker(typing.Generic[T]):
    """
    One job together with the process and channels used to run it.

    A Worker is activate()-ed exactly once and collect()-ed exactly once.
    Workers can be neither copied nor pickled.
    """

    __slots__ = (
        "ident",
        "pid",
        "_fn",
        "_args",
        "_kwargs",
        "_env",
        "_preexec_fn",
        "_state",
        "_result",
        "_error",
        "_codec",
        "_process",
        "_channel",
        "_lifeline",
    )

    def __init__(
        self,
        ident: typing.Hashable,
        fn: typing.Callable[..., T],
        args: typing.Iterable = (),
        kwargs: typing.Mapping[str, typing.Any] = types.MappingProxyType({}),
        env: typing.Iterable = (),
        preexec_fn: typing.Callable[[], None] = noop,
    ) -> None:
        assert fn is not None
        self.ident = ident
        self.pid = None  # type: typing.Optional[int]
        self._fn = fn
        self._args = tuple(args)
        self._kwargs = dict(kwargs)
        self._env = dict(env)
        self._preexec_fn = preexec_fn
        self._state = State.PENDING
        self._result = None  # type: typing.Optional[T]
        self._error = None  # type: typing.Optional[Exception]
        self._codec = None  # type: typing.Optional[Codec]
        self._process = None  # type: typing.Optional[BaseProcess]
        self._channel = None  # type: typing.Optional[ResultChannel]
        self._lifeline = None  # type: typing.Optional[LivenessChannel]

    def __copy__(self) -> typing.NoReturn:
        """Disallow copying as duplicates cannot sensibly share resources."""
        # In particular, which copy would call self._process.join()?
        raise NotImplementedError("Workers cannot be copied.")

    def __reduce__(self) -> typing.NoReturn:
        """Disallow pickling as duplicates cannot sensibly share resources."""
        raise NotImplementedError("Workers cannot be pickled.")

    def __repr__(self) -> str:
        return "Worker({!r}, state={}, pid={})".format(
            self.ident, self._state.value, self.pid
        )

    @property
    def state(self) -> State:
        return self._state

    @property
    def result(self) -> typing.Optional[T]:
        return self._result

    @property
    def error(self) -> typing.Optional[Exception]:
        return self._error

    @property
    def reader(self) -> Connection:
        """The readable end on which to wait(...) for this Worker's result."""
        assert self._channel is not None, "Worker not running"
        return self._channel.reader

    def info(self) -> Info:
        return Info(
            ident=self.ident,
            state=self._state,
            pid=self.pid,
            result=self._result,
            error=self._error,
        )

    def _transition(self, state: State) -> None:
        assert state in _TRANSITIONS[self._state], (self._state, state)
        self._state = state

    def _fail(self, error: Exception) -> Exception:
        """Record error, moving to ERRORED, and return it for raising."""
        self._transition(State.ERRORED)
        self._error = error
        return error

    def activate(
        self, context: BaseContext, codec: Codec, liveness: bool = False
    ) -> int:
        """
        Spawn a process running this Worker's job and return its pid.

        Raises SpawnError, having moved to ERRORED, if spawning fails.
        """
        assert self._state is State.PENDING, self._state
        # Held until the child's ends are released so that no other spawn
        # from this process forks while they are open.  Such a fork would
        # inherit them and so hide the child hanging up on its channel.
        with _SPAWNING:
            channel = ResultChannel(context)
            lifeline = LivenessChannel(context) if liveness else None
            ends = None if lifeline is None else lifeline.child_ends()
            try:
                process = context.Process(  # type: ignore
                    target=_worker_entrypoint,
                    args=(
                        (
                            channel.child_end(),
                            ends,
                            codec,
                            self._env,
                            self._preexec_fn,
                            self._fn,
                        )
                        + self._args
                    ),
                    kwargs=self._kwargs,
                    daemon=False,
                )
                process.start()
            except Exception as e:
                channel.close()
                if lifeline is not None:
                    lifeline.close()
                message = "Spawning job {!r} failed: {}".format(self.ident, e)
                raise self._fail(SpawnError(message)) from e

            # The child now holds its own ends so drop the coordinator's
            # copies.  Otherwise end-of-stream could never be observed.
            channel.release_child_end()
            if lifeline is not None:
                lifeline.release_child_end()

        self._codec = codec
        self._process = process
        self._channel = channel
        self._lifeline = lifeline
        self.pid = process.pid
        self._transition(State.RUNNING)
        _LOGGER.debug("Activated job %r as pid %s", self.ident, self.pid)
        return typing.cast(int, self.pid)

    def collect(self) -> T:
        """
        Block until a result is available, decode it, and reap the process.

        Raises JobPanic, WorkerDied, or DecodeError for failures of the job
        and ReapError when the process could not be reaped.  In all cases
        the error is recorded and the Worker has moved to ERRORED.
        """
        assert self._state is State.RUNNING, self._state
        assert self._channel is not None and self._process is not None
        frame = self._channel.receive()

        # Now join(...) and set to None thus reclaiming OS/Python resources.
        process, self._process = self._process, None
        process.join()
        exitcode = process.exitcode
        if self._lifeline is not None:
            self._lifeline.close()
        _LOGGER.debug(
            "Collected job %r from pid %s with status %s",
            self.ident,
            self.pid,
            exitcode,
        )

        # Join(...) quietly returns when someone else already reaped the pid
        if exitcode is None:
            raise self._fail(
                ReapError(
                    "Process {} of job {!r} could not be reaped".format(
                        self.pid, self.ident
                    )
                )
            )

        if frame is None:
            raise self._fail(
                WorkerDied(
                    "Job {!r} exited with status {} without a result".format(
                        self.ident, exitcode
                    ),
                    exitcode,
                )
            )

        try:
            wrapper = Wrapper.from_frame(frame)
            if isinstance(wrapper, Err):
                raise self._fail(JobPanic(wrapper.message, exitcode))
            assert isinstance(wrapper, Ok), type(wrapper)
            assert self._codec is not None
            result = wrapper.decode(self._codec)
        except DecodeError as e:
            raise self._fail(e)

        self._result = result
        self._transition(State.FINISHED)
        return result


def describe(exception: BaseException) -> str:
    """Format an Exception as type and message on one line."""
    lines = traceback.format_exception_only(type(exception), exception)
    return "".join(lines).strip()


def _worker_entrypoint(
    writer: Connection,
    lifeline: typing.Optional[typing.Tuple[Connection, Connection]],
    codec: Codec,
    env: typing.Dict[str, typing.Optional[str]],
    preexec_fn: typing.Callable[[], None],
    fn: typing.Callable,
    *args,
    **kwargs
) -> None:
    """Entry point for processes running fn(...) on behalf of a Worker."""
    # A forked child must not run its coordinator's SIGCHLD bookkeeping
    signal.signal(signal.SIGCHLD, signal.SIG_DFL)
    if lifeline is not None:
        watch_parent(*lifeline)

    # Wrapper usage tracks whether a value was returned or raised
    # in degenerate case where client code returns an Exception.
    failed = False
    try:
        # None invalid in os.environ so interpret as sentinel for popping
        for key, value in env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        preexec_fn()
        value = fn(*args, **kwargs)
        wrapper = Ok(codec.encode(value), codec.tag)  # type: Wrapper
    except Exception as exception:
        wrapper = Err(describe(exception))
        failed = True
    send_frame(writer, wrapper)

    # Non-zero status so a failure is visible even to a bare waitpid(...)
    if failed:
        sys.exit(1)
