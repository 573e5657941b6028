# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for the JobQueue and related classes."""
import contextlib
import copy
import os
import pickle
import signal
import threading
import time
import typing
import unittest

from multiprocessing import get_all_start_methods, get_context

from .detector import (
    CompletionDetector,
    ReadinessDetector,
    SignalDetector,
    WatcherDetector,
)
from .errors import (
    AlreadyStarted,
    JobPanic,
    SpawnError,
    WorkerDied,
)
from .impl import JobQueue
from .worker import State, noop

T = typing.TypeVar("T")

# Detectors for which JobQueue.start(...) returns before jobs complete
ASYNCHRONOUS = ("watcher", "signal")


def configurations(
    names: typing.Iterable[str] = ("readiness", "watcher", "signal")
) -> typing.Iterator[typing.Tuple[str, str]]:
    """Every usable (start method, detector name) pair."""
    for method in get_all_start_methods():
        for name in names:
            # SIGCHLD only reaches us for direct children
            if name == "signal" and method not in ("fork", "spawn"):
                continue
            yield method, name


def make_detector(name: str) -> CompletionDetector:
    if name == "readiness":
        return ReadinessDetector()
    if name == "watcher":
        return WatcherDetector()
    if name == "signal":
        return SignalDetector()
    raise ValueError(name)


class JobQueueTest(unittest.TestCase):
    """Unit tests (doubling as examples) for JobQueue/Worker."""

    def test_defaults(self) -> None:
        """Default construction and __call__ shorthand ok?"""
        queue = JobQueue()
        f = queue(len, (1, 2, 3))
        g = queue(str, object=2)
        h = queue.add(fn=len, args=((1, 2, 3, 4),))
        self.assertEqual([0, 1, 2], [f, g, h])
        queue.start()
        self.assertTrue(queue.wait_until_idle())
        self.assertEqual(4, queue.get_info(h).result)
        self.assertEqual("2", queue.get_info(g).result)
        self.assertEqual(3, queue.get_info(f).result)

    def test_basic(self) -> None:
        """Results available and bookkeeping consistent once idle?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                idents = [queue(len, "x" * i) for i in range(5)]
                self.assertEqual(5, len(queue.pending_jobs))
                queue.start(2)
                self.assertTrue(queue.wait_until_idle())
                self.assertTrue(queue.finished())

                # Confirm results and states
                for i, ident in enumerate(idents):
                    info = queue.get_info(ident)
                    self.assertIs(State.FINISHED, info.state)
                    self.assertEqual(i, info.result)
                    self.assertIsNone(info.error)
                    self.assertIsNone(info.message)
                    self.assertIsNotNone(info.pid)

                # Confirm every job lies in exactly one collection
                self.assertEqual((), queue.pending_jobs)
                self.assertEqual((), queue.active_jobs)
                self.assertEqual(set(idents), set(queue.finished_jobs))
                self.assertLessEqual(queue.peak_active, 2)
                self.assertEqual(2, queue.capacity)

    @staticmethod
    def helper_timestamp() -> float:
        """Helper reporting when it ran."""
        return time.time()

    def test_fifo(self) -> None:
        """Jobs are activated in the order in which they were added?"""
        queue = JobQueue(detector=ReadinessDetector())
        idents = [queue(self.helper_timestamp) for _ in range(4)]
        queue.start(1)
        stamps = [queue.get_info(ident).result for ident in idents]
        self.assertEqual(sorted(stamps), stamps)

    @staticmethod
    def helper_raise(klass: type, *args) -> typing.NoReturn:
        """Helper raising the requested Exception class."""
        raise klass(*args)

    def test_raises(self) -> None:
        """A raising job is recorded and its slot reused?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                f = queue(self.helper_raise, ArithmeticError, "message123")
                g = queue(str, object=2)
                queue.start(1)
                self.assertTrue(queue.wait_until_idle())

                info = queue.get_info(f)
                self.assertIs(State.ERRORED, info.state)
                self.assertIsInstance(info.error, JobPanic)
                self.assertNotIsInstance(info.error, WorkerDied)
                self.assertIsNone(info.result)
                assert info.message is not None
                self.assertIn("ArithmeticError", info.message)
                self.assertIn("message123", info.message)
                assert isinstance(info.error, JobPanic)
                self.assertEqual(1, info.error.exitcode)

                # Confirm other work processed without issue
                self.assertIs(State.FINISHED, queue.get_info(g).state)
                self.assertEqual("2", queue.get_info(g).result)

    def test_all_raise(self) -> None:
        """Idle is reported even when every job fails?"""
        for method, name in configurations(ASYNCHRONOUS):
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                for _ in range(3):
                    queue(self.helper_raise, ValueError)
                queue.start(2)
                self.assertTrue(queue.wait_until_idle())
                self.assertEqual(
                    [State.ERRORED] * 3,
                    [queue.get_info(i).state for i in range(3)],
                )

    @staticmethod
    def helper_signal(sig: signal.Signals) -> typing.NoReturn:
        """Helper sending the given signal to the current process."""
        os.kill(os.getpid(), sig)
        assert False, "Unreachable"

    def test_worker_died(self) -> None:
        """Signal receipt by worker is detected and reported?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                f = queue(self.helper_signal, signal.SIGKILL)
                g = queue(self.helper_signal, signal.SIGTERM)
                h = queue(len, "The jig is up!")
                queue.start(2)
                self.assertTrue(queue.wait_until_idle())

                for ident, sig in ((f, signal.SIGKILL), (g, signal.SIGTERM)):
                    info = queue.get_info(ident)
                    self.assertIs(State.ERRORED, info.state)
                    self.assertIsInstance(info.error, WorkerDied)
                    assert isinstance(info.error, WorkerDied)
                    self.assertEqual(-sig, info.error.exitcode)
                self.assertEqual(14, queue.get_info(h).result)

    # Explicitly tested because of handling woes observed in other designs
    def test_returns_none(self) -> None:
        """None can be returned and is distinguished from no result?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                f = queue(noop)
                queue.start(1)
                queue.wait_until_idle()
                self.assertIs(State.FINISHED, queue.get_info(f).state)
                self.assertIsNone(queue.get_info(f).result)

    @staticmethod
    def helper_return(arg: T) -> T:
        """Helper returning its lone argument."""
        return arg

    # Explicitly tested because of handling woes observed in other designs
    def test_returns_not_raises_exception(self) -> None:
        """An Exception can be returned, not raised, from a job?"""
        for method in get_all_start_methods():
            with self.subTest(method=method):
                queue = JobQueue(context=method)
                e = Exception("Returned by method {}".format(method))
                f = queue(self.helper_return, e)
                queue.start(1)
                queue.wait_until_idle()
                info = queue.get_info(f)
                self.assertIs(State.FINISHED, info.state)
                self.assertEqual(type(e), type(info.result))
                self.assertEqual(e.args, info.result.args)

    @staticmethod
    def helper_unpicklable() -> threading.Lock:
        """Helper returning something which cannot be pickled."""
        return threading.Lock()

    def test_unencodable_result(self) -> None:
        """A result the Codec cannot encode is reported as a failure?"""
        queue = JobQueue()
        f = queue(self.helper_unpicklable)
        queue.start(1)
        queue.wait_until_idle()
        info = queue.get_info(f)
        self.assertIs(State.ERRORED, info.state)
        self.assertIsInstance(info.error, JobPanic)

    def test_spawn_error(self) -> None:
        """A job failing to spawn is recorded and the next job runs?"""
        for name in ("readiness", "watcher"):
            with self.subTest(detector=name):
                # Under spawn a lambda cannot be sent to the child
                queue = JobQueue(context="spawn", detector=make_detector(name))
                f = queue(lambda: 1)
                g = queue(len, "abc")
                queue.start(1)
                self.assertTrue(queue.wait_until_idle())

                info = queue.get_info(f)
                self.assertIs(State.ERRORED, info.state)
                self.assertIsInstance(info.error, SpawnError)
                self.assertIsNone(info.pid)
                self.assertEqual(3, queue.get_info(g).result)
                self.assertEqual({f, g}, set(queue.finished_jobs))

    # Motivated by multiprocessing.Connection mentioning a possible 32MB limit
    def test_large_objects(self) -> None:
        """Confirm increasingly large objects can be processed."""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                sizes = [1 << i for i in range(16, 25)]  # 2**24 is 16 MB
                idents = [queue(bytearray, size) for size in sizes]
                queue.start(2)
                queue.wait_until_idle()
                for size, ident in zip(sizes, idents):
                    self.assertEqual(size, len(queue.get_info(ident).result))

    # Uses "SENTINEL", not None, because None handling is tested elsewhere
    @staticmethod
    def helper_envget(key: str) -> str:
        """Retrieve os.environ.get(key, "SENTINEL")."""
        return os.environ.get(key, "SENTINEL")

    @staticmethod
    def helper_preexec_fn() -> None:
        """Mutates os.environ so that the change can be observed."""
        os.environ["JOBQUEUE_TEST_ENVIRON"] = "PREEXEC_FN"

    def test_environ(self) -> None:
        """Confirm sub-process environment is modifiable via add(...)."""
        # Precondition: key must not be in environment
        key = "JOBQUEUE_TEST_ENVIRON"
        self.assertIsNone(os.environ.get(key, None))

        for method in get_all_start_methods():
            with self.subTest(method=method):
                queue = JobQueue(context=method)
                # Notice f sets, g confirms unset, and h re-sets the key.
                f = queue.add(
                    fn=self.helper_envget, args=(key,), env={key: "5678"}
                )
                g = queue.add(fn=self.helper_envget, args=(key,), env={})
                h = queue.add(
                    fn=self.helper_envget, args=(key,), env={key: "1234"}
                )
                # Notice that i then uses preexec_fn, not env, to set the key.
                i = queue.add(
                    fn=self.helper_envget,
                    args=(key,),
                    preexec_fn=self.helper_preexec_fn,
                )
                # Then j uses both to confirm env updated before preexec_fn.
                j = queue.add(
                    fn=self.helper_envget,
                    args=(key,),
                    preexec_fn=self.helper_preexec_fn,
                    env={key: "OVERWRITTEN"},
                )
                # Lastly, k sets then unsets to check unsetting and Iterables.
                k = queue.add(
                    fn=self.helper_envget,
                    args=(key,),
                    env=((key, "OVERWRITTEN"), (key, None)),
                )
                queue.start(3)
                queue.wait_until_idle()

                def result(ident: typing.Hashable) -> typing.Any:
                    return queue.get_info(ident).result

                # Checking the various results in an arbitrary order
                self.assertEqual("PREEXEC_FN", result(j))
                self.assertEqual("PREEXEC_FN", result(i))
                self.assertEqual("1234", result(h))
                self.assertEqual("SENTINEL", result(g))
                self.assertEqual("5678", result(f))
                self.assertEqual("SENTINEL", result(k))

    def test_liveness_enabled(self) -> None:
        """Jobs complete normally when paired with a lifeline?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(
                    context=method, detector=make_detector(name), liveness=True
                )
                idents = [queue(len, "x" * i) for i in range(4)]
                queue.start(2)
                queue.wait_until_idle()
                self.assertEqual(
                    [0, 1, 2, 3],
                    [queue.get_info(ident).result for ident in idents],
                )

    def test_labels(self) -> None:
        """Caller-supplied labels and sequential identities coexist?"""
        queue = JobQueue()
        self.assertEqual(1, queue.add(fn=len, args=("a",), label=1))
        self.assertEqual(0, queue(len, "ab"))
        self.assertEqual(2, queue(len, "abc"), "Skips label 1")
        four = queue.add(fn=len, args=("abcd",), label="four")
        self.assertEqual("four", four)
        with self.assertRaises(ValueError):
            queue.add(fn=len, args=("",), label="four")
        queue.start(2)
        queue.wait_until_idle()
        self.assertEqual(1, queue.get_info(1).result)
        self.assertEqual(2, queue.get_info(0).result)
        self.assertEqual(3, queue.get_info(2).result)
        self.assertEqual(4, queue.get_info("four").result)

    def test_lifecycle_errors(self) -> None:
        """Misuse is reported rather than silently accepted?"""
        queue = JobQueue()
        with self.assertRaises(KeyError):
            queue.get_info(0)
        for capacity in (0, -1, 1.5, True):
            with self.assertRaises(ValueError):
                queue.start(capacity)  # type: ignore
        queue(len, "abc")
        queue.start(1)
        with self.assertRaises(AlreadyStarted):
            queue(len, "abc")
        with self.assertRaises(AlreadyStarted):
            queue.start(1)
        queue.wait_until_idle()
        with self.assertRaises(KeyError):
            queue.get_info(1)

    def test_no_jobs(self) -> None:
        """An empty JobQueue becomes idle upon start(...)?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                queue = JobQueue(context=method, detector=make_detector(name))
                self.assertFalse(queue.finished())
                self.assertFalse(queue.wait_until_idle(timeout=0))
                queue.start(3)
                self.assertTrue(queue.finished())
                self.assertTrue(queue.wait_until_idle(timeout=0))
                self.assertTrue(queue.wait_until_idle())

    def test_duplication(self) -> None:
        """Copying and pickling of JobQueues and Workers is disallowed."""
        queue = JobQueue()
        queue(len, "abc")
        worker = queue.pending_jobs[0]
        for item in (queue, worker):
            with self.assertRaises(NotImplementedError):
                copy.copy(item)
            with self.assertRaises(NotImplementedError):
                copy.deepcopy(item)
            with self.assertRaises(NotImplementedError):
                pickle.dumps(item)

    @contextlib.contextmanager
    def assert_elapsed(self, minimum: float):  # type: ignore
        """Asserts a 'with' block required at least minimum seconds to run."""
        start = time.monotonic()
        yield
        elapsed = time.monotonic() - start
        self.assertGreaterEqual(elapsed, minimum, "Not enough seconds elapsed")

    @staticmethod
    def helper_handshake(event: typing.Any) -> str:
        """Helper blocking until event is set and returning a handshake."""
        # Timeout allows heavy OS load while also detecting complete breakage
        if not event.wait(timeout=60.0):
            raise TimeoutError()
        return "handshake"

    def test_wait_until_idle(self) -> None:
        """Waiting blocks until idle, honors timeouts, and is idempotent?"""
        for method, name in configurations(ASYNCHRONOUS):
            with self.subTest(method=method, detector=name):
                context = get_context(method)
                event = context.Event()
                queue = JobQueue(context=context, detector=make_detector(name))
                f = queue(self.helper_handshake, event)
                g = queue(len, "abc")
                delay = 0.1  # Impacts test runtime on the success path

                # Before start(...), everything is pending
                self.assertIs(State.PENDING, queue.get_info(f).state)
                self.assertIs(State.PENDING, queue.get_info(g).state)
                queue.start(1)

                # Job f stalls so g waits and the queue is not idle
                self.assertIs(State.RUNNING, queue.get_info(f).state)
                self.assertIs(State.PENDING, queue.get_info(g).state)
                self.assertFalse(queue.finished())
                with self.assert_elapsed(0):
                    self.assertFalse(queue.wait_until_idle(timeout=0))
                with self.assert_elapsed(delay):
                    self.assertFalse(queue.wait_until_idle(timeout=delay))

                # After the handshake everything completes
                event.set()
                self.assertTrue(queue.wait_until_idle())
                self.assertTrue(queue.finished())
                with self.assert_elapsed(0):
                    self.assertTrue(queue.wait_until_idle())
                    self.assertTrue(queue.wait_until_idle(timeout=0))
                self.assertEqual("handshake", queue.get_info(f).result)
                self.assertEqual(3, queue.get_info(g).result)
                self.assertIs(State.FINISHED, queue.get_info(g).state)

    def test_wait_until_idle_threads(self) -> None:
        """Many threads waiting concurrently are all released?"""
        context = get_context()
        event = context.Event()
        queue = JobQueue(context=context)
        queue(self.helper_handshake, event)
        queue.start(1)
        released = []  # type: typing.List[bool]
        threads = [
            threading.Thread(
                target=lambda: released.append(queue.wait_until_idle())
            )
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        event.set()
        for thread in threads:
            thread.join(timeout=60)
        self.assertEqual([True] * 4, released)

    @staticmethod
    def helper_sleep(seconds: float, result: T) -> T:
        """Helper sleeping before returning result."""
        time.sleep(seconds)
        return result

    def test_simultaneous_completions(self) -> None:
        """Many short jobs finishing together are each refilled once?"""
        for method, name in configurations():
            with self.subTest(method=method, detector=name):
                capacity = 6
                queue = JobQueue(context=method, detector=make_detector(name))
                idents = [
                    queue(self.helper_sleep, 0.05, i) for i in range(24)
                ]
                queue.start(capacity)
                self.assertTrue(queue.wait_until_idle())
                self.assertEqual(capacity, queue.peak_active)
                self.assertEqual(len(idents), len(queue.finished_jobs))
                for i, ident in enumerate(idents):
                    info = queue.get_info(ident)
                    self.assertIs(State.FINISHED, info.state)
                    self.assertEqual(i, info.result)

    @staticmethod
    def sleep_until(deadline: float) -> None:
        """Sleep until time.monotonic() reaches deadline."""
        time.sleep(max(0.0, deadline - time.monotonic()))

    def test_scheduling_timeline(self) -> None:
        """Third job runs only once a slot frees up?"""
        # Durations 5, 5, and 10 units with capacity 2
        unit = 0.6
        queue = JobQueue()
        queue.add(
            fn=self.helper_sleep, args=(5 * unit, "A done"), label="1st job"
        )
        queue.add(
            fn=self.helper_sleep, args=(5 * unit, "B done"), label="2nd job"
        )
        queue.add(
            fn=self.helper_sleep, args=(10 * unit, "C done"), label="3rd job"
        )
        start = time.monotonic()
        queue.start(2)

        self.sleep_until(start + 6 * unit)
        finished = queue.finished_jobs
        self.assertEqual("A done", finished["1st job"].result)
        self.assertEqual("B done", finished["2nd job"].result)
        self.assertNotIn("3rd job", finished)
        self.assertIs(State.RUNNING, queue.get_info("3rd job").state)

        self.sleep_until(start + 12 * unit)
        self.assertNotIn("3rd job", queue.finished_jobs)

        self.assertTrue(queue.wait_until_idle())
        self.assertGreaterEqual(time.monotonic() - start, 15 * unit)
        self.assertEqual("C done", queue.finished_jobs["3rd job"].result)

    def test_hung_job_holds_slot(self) -> None:
        """Without timeouts, a hung job occupies its slot indefinitely."""
        context = get_context()
        event = context.Event()
        queue = JobQueue(context=context)
        f = queue(self.helper_handshake, event)
        g = queue(len, "abc")
        queue.start(1)
        time.sleep(0.5)
        self.assertIs(State.RUNNING, queue.get_info(f).state)
        self.assertIs(State.PENDING, queue.get_info(g).state)
        self.assertEqual(1, len(queue.active_jobs))
        event.set()
        self.assertTrue(queue.wait_until_idle())

    def test_idle_despite_other_forks(self) -> None:
        """Children forked by another JobQueue do not delay idleness?"""
        if "fork" not in get_all_start_methods():
            self.skipTest("fork unavailable")
        quick = JobQueue(context="fork")
        slow = JobQueue(context="fork")
        f = quick(len, "abc")
        slow(self.helper_sleep, 6, None)

        # The slow child inherits whatever descriptors quick already holds
        slow.start(1)
        quick.start(1)
        self.assertTrue(quick.wait_until_idle(timeout=4))
        self.assertTrue(quick.finished())
        self.assertEqual(3, quick.get_info(f).result)
        self.assertFalse(slow.finished())
        self.assertTrue(slow.wait_until_idle())

    def test_death_despite_other_forks(self) -> None:
        """Dying jobs are noticed while another JobQueue keeps forking?"""
        if "fork" not in get_all_start_methods():
            self.skipTest("fork unavailable")
        dying = JobQueue(context="fork")
        for _ in range(8):
            dying(self.helper_signal, signal.SIGKILL)
        sleeping = JobQueue(context="fork")
        for _ in range(8):
            sleeping(self.helper_sleep, 6, None)

        # Both queues spawn concurrently from separate threads
        thread = threading.Thread(target=sleeping.start, args=(8,))
        thread.start()
        dying.start(4)
        thread.join()
        self.assertTrue(dying.wait_until_idle(timeout=4))
        for ident in range(8):
            self.assertIsInstance(dying.get_info(ident).error, WorkerDied)
        self.assertTrue(sleeping.wait_until_idle())

    @staticmethod
    def helper_nested(method: str) -> int:
        """Helper running its own JobQueue from within a job."""
        queue = JobQueue(context=method)
        f = queue(len, "nested")
        queue.start(1)
        queue.wait_until_idle()
        return queue.get_info(f).result

    def test_nested(self) -> None:
        """Jobs may themselves run JobQueues?"""
        for method in get_all_start_methods():
            with self.subTest(method=method):
                queue = JobQueue(context=method)
                idents = [queue(self.helper_nested, method) for _ in range(4)]
                queue.start(2)
                self.assertTrue(queue.wait_until_idle(timeout=60))
                for ident in idents:
                    self.assertEqual(6, queue.get_info(ident).result)


if __name__ == "__main__":
    unittest.main()
