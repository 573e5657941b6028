# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for CompletionDetectors and their use by a JobQueue."""
import os
import signal
import threading
import time
import typing
import unittest

from multiprocessing import get_all_start_methods, get_context
from multiprocessing.connection import wait
from multiprocessing.context import BaseContext

from .channel import PickleCodec
from .detector import (
    CompletionDetector,
    OnFinished,
    SignalChain,
    SignalDetector,
)
from .errors import ReapError, SpawnError
from .impl import JobQueue
from .worker import State, Worker

# Start methods whose workers are direct children of this process
DIRECT = tuple(m for m in get_all_start_methods() if m in ("fork", "spawn"))


class ManualDetector(CompletionDetector):
    """A fake permitting tests to decide when and which Workers finish."""

    def __init__(self) -> None:
        self.on_finished = None  # type: typing.Optional[OnFinished]
        self.tracked = []  # type: typing.List[Worker]
        self.closed = 0

    def open(self, on_finished: OnFinished, context: BaseContext) -> None:
        self.on_finished = on_finished

    def track(self, worker: Worker) -> None:
        self.tracked.append(worker)

    def close(self) -> None:
        self.closed += 1

    def finish(self, worker: Worker) -> None:
        """Report worker once its result is available."""
        assert self.on_finished is not None
        wait((worker.reader,))
        self.on_finished(worker)


class SchedulingTest(unittest.TestCase):
    """Refill semantics observed through a ManualDetector."""

    def test_refill_once_per_completion(self) -> None:
        detector = ManualDetector()
        queue = JobQueue(detector=detector)
        idents = [queue(len, "x" * i) for i in range(5)]
        queue.start(2)

        # Initial fill activates exactly capacity jobs in FIFO order
        self.assertEqual([0, 1], [w.ident for w in detector.tracked])
        self.assertEqual([2, 3, 4], [w.ident for w in queue.pending_jobs])
        self.assertEqual(2, len(queue.active_jobs))

        # Finishing out of activation order refills exactly one job
        detector.finish(detector.tracked[1])
        self.assertEqual([0, 1, 2], [w.ident for w in detector.tracked])
        self.assertEqual({0, 2}, {w.ident for w in queue.active_jobs})
        self.assertEqual([1], list(queue.finished_jobs))
        self.assertIs(State.FINISHED, queue.get_info(1).state)

        detector.finish(detector.tracked[0])
        detector.finish(detector.tracked[2])
        self.assertEqual([0, 1, 2, 3, 4], [w.ident for w in detector.tracked])
        self.assertFalse(queue.finished())
        self.assertEqual(0, detector.closed)

        # The last completions refill nothing and release the gate once
        detector.finish(detector.tracked[4])
        self.assertFalse(queue.finished())
        detector.finish(detector.tracked[3])
        self.assertTrue(queue.finished())
        self.assertEqual(1, detector.closed)
        self.assertEqual(5, len(detector.tracked))
        self.assertEqual(2, queue.peak_active)
        for i, ident in enumerate(idents):
            self.assertEqual(i, queue.get_info(ident).result)

    def test_counts_conserved(self) -> None:
        """Every job lies in exactly one collection at every step."""
        detector = ManualDetector()
        queue = JobQueue(detector=detector)
        total = 7
        for i in range(total):
            queue(len, "x" * i)

        def observe() -> None:
            pending = {w.ident for w in queue.pending_jobs}
            active = {w.ident for w in queue.active_jobs}
            finished = set(queue.finished_jobs)
            self.assertEqual(
                total, len(pending) + len(active) + len(finished)
            )
            self.assertEqual(set(range(total)), pending | active | finished)
            self.assertLessEqual(len(active), 3)

        observe()
        queue.start(3)
        while not queue.finished():
            observe()
            detector.finish(queue.active_jobs[-1])
        observe()

    def test_refill_skips_spawn_error(self) -> None:
        """A job failing to spawn during refill does not consume the slot."""
        detector = ManualDetector()
        queue = JobQueue(context="spawn", detector=detector)
        f = queue(len, "a")
        g = queue(lambda: 1)  # Cannot be pickled for spawn
        h = queue(len, "abc")
        queue.start(1)
        self.assertEqual([f], [w.ident for w in detector.tracked])

        detector.finish(detector.tracked[0])
        self.assertEqual([f, h], [w.ident for w in detector.tracked])
        info = queue.get_info(g)
        self.assertIs(State.ERRORED, info.state)
        self.assertIsInstance(info.error, SpawnError)
        self.assertIsNotNone(info.error.__cause__)

        detector.finish(detector.tracked[1])
        self.assertTrue(queue.wait_until_idle(timeout=0))
        self.assertEqual(3, queue.get_info(h).result)

    def test_reap_error(self) -> None:
        """A worker reaped behind the JobQueue's back is surfaced."""
        for method in DIRECT:
            with self.subTest(method=method):
                detector = ManualDetector()
                queue = JobQueue(context=method, detector=detector)
                f = queue(len, "abc")
                g = queue(len, "de")
                queue.start(1)
                worker = detector.tracked[0]

                # Steal the exit status before the JobQueue can collect it
                assert worker.pid is not None
                os.waitpid(worker.pid, 0)
                detector.finish(worker)

                # Reported as a distinct, fatal error but work continues
                info = queue.get_info(f)
                self.assertIs(State.ERRORED, info.state)
                self.assertIsInstance(info.error, ReapError)
                detector.finish(detector.tracked[1])
                self.assertEqual(2, queue.get_info(g).result)
                with self.assertRaises(ReapError):
                    queue.wait_until_idle()
                with self.assertRaises(ReapError):
                    queue.wait_until_idle()


class SignalChainTest(unittest.TestCase):
    """SignalChain composes with previously installed handlers."""

    signum = signal.SIGUSR1

    def setUp(self) -> None:
        self.original = signal.getsignal(self.signum)
        self.calls = []  # type: typing.List[str]

    def tearDown(self) -> None:
        signal.signal(self.signum, self.original)

    def prior(self, signum: int, frame: typing.Any) -> None:
        self.calls.append("prior")

    def first(self, signum: int, frame: typing.Any) -> None:
        self.calls.append("first")

    def second(self, signum: int, frame: typing.Any) -> None:
        self.calls.append("second")

    def raise_signal(self, expected: int) -> None:
        """Send the signal to this process and await expected calls."""
        os.kill(os.getpid(), self.signum)
        deadline = time.monotonic() + 10
        while len(self.calls) < expected and time.monotonic() < deadline:
            time.sleep(0.01)

    def test_chaining(self) -> None:
        signal.signal(self.signum, self.prior)
        chain = SignalChain(self.signum)
        chain.subscribe(self.first)
        chain.subscribe(self.second)
        self.assertEqual(2, chain.subscribers)
        self.raise_signal(expected=3)
        self.assertEqual(["first", "second", "prior"], self.calls)

        # Removing the last subscriber restores the prior handler
        chain.unsubscribe(self.first)
        chain.unsubscribe(self.second)
        self.assertEqual(0, chain.subscribers)
        self.assertEqual(self.prior, signal.getsignal(self.signum))

    def test_ignored_prior(self) -> None:
        signal.signal(self.signum, signal.SIG_IGN)
        chain = SignalChain(self.signum)
        chain.subscribe(self.first)
        self.raise_signal(expected=1)
        self.assertEqual(["first"], self.calls)
        chain.unsubscribe(self.first)
        self.assertEqual(signal.SIG_IGN, signal.getsignal(self.signum))

    def test_unsubscribe_off_main_thread(self) -> None:
        """Off the main thread a pass-through handler stays installed."""
        signal.signal(self.signum, self.prior)
        chain = SignalChain(self.signum)
        chain.subscribe(self.first)
        thread = threading.Thread(target=chain.unsubscribe, args=(self.first,))
        thread.start()
        thread.join()
        self.assertNotEqual(self.prior, signal.getsignal(self.signum))

        # Pass-through handler still reaches the prior handler
        self.raise_signal(expected=1)
        self.assertEqual(["prior"], self.calls)

        # Resubscribing reuses the installed handler
        chain.subscribe(self.second)
        self.raise_signal(expected=3)
        self.assertEqual(["prior", "second", "prior"], self.calls)
        chain.unsubscribe(self.second)
        self.assertEqual(self.prior, signal.getsignal(self.signum))

    def test_replaced_handler_untouched(self) -> None:
        """A handler installed after the chain is never clobbered."""
        chain = SignalChain(self.signum)
        chain.subscribe(self.first)
        signal.signal(self.signum, self.second)
        chain.unsubscribe(self.first)
        self.assertEqual(self.second, signal.getsignal(self.signum))


class SignalDetectorTest(unittest.TestCase):
    """SignalDetector drains exits without reaping them."""

    @staticmethod
    def activated(method: str, count: int) -> typing.List[Worker]:
        context = get_context(method)
        workers = []
        for i in range(count):
            worker = Worker(ident=i, fn=len, args=("x" * i,))  # type: Worker
            worker.activate(context, PickleCodec())
            workers.append(worker)
        return workers

    @staticmethod
    def await_exit(worker: Worker) -> None:
        """Block until worker's process exits without reaping it."""
        assert worker.pid is not None
        try:
            os.waitid(os.P_PID, worker.pid, os.WEXITED | os.WNOWAIT)
        except ChildProcessError:
            pass  # Reaped by multiprocessing when starting a sibling

    def test_drain_coalesces(self) -> None:
        """One drain reports every exited Worker exactly once."""
        for method in DIRECT:
            with self.subTest(method=method):
                detector = SignalDetector()
                workers = self.activated(method, 3)
                for worker in workers:
                    detector.track(worker)
                    self.await_exit(worker)
                drained = detector.drain()
                self.assertEqual(
                    [0, 1, 2], sorted(w.ident for w in drained)
                )
                self.assertEqual([], detector.drain())

                # Exits were observed, not reaped, so collection works
                for i, worker in enumerate(workers):
                    self.assertEqual(i, worker.collect())

    def test_drain_already_reaped(self) -> None:
        """A tracked pid reaped elsewhere is reported, not swallowed."""
        for method in DIRECT:
            with self.subTest(method=method):
                detector = SignalDetector()
                (worker,) = self.activated(method, 1)
                detector.track(worker)
                assert worker.pid is not None
                os.waitpid(worker.pid, 0)
                self.assertEqual([worker], detector.drain())
                with self.assertRaises(ReapError):
                    worker.collect()
                self.assertIs(State.ERRORED, worker.state)

    def test_reused_pid(self) -> None:
        """Workers sharing a pid, as after reuse, are each reported."""
        for method in DIRECT:
            with self.subTest(method=method):
                detector = SignalDetector()
                first, second = self.activated(method, 2)
                second.pid = first.pid
                detector.track(first)
                detector.track(second)
                with self.assertRaises(AssertionError):
                    detector.track(second)
                for worker in (first, second):
                    wait((worker.reader,))
                drained = detector.drain()
                self.assertEqual([0, 1], sorted(w.ident for w in drained))
                self.assertEqual(0, first.collect())
                self.assertEqual(1, second.collect())

    def test_result_exceeding_pipe(self) -> None:
        """Results too large to buffer are reported before their exit."""
        for method in DIRECT:
            with self.subTest(method=method):
                queue = JobQueue(context=method, detector=SignalDetector())
                f = queue(bytearray, 1 << 20)
                g = queue(bytearray, 1 << 17)
                queue.start(1)
                self.assertTrue(queue.wait_until_idle(timeout=30))
                self.assertEqual(1 << 20, len(queue.get_info(f).result))
                self.assertEqual(1 << 17, len(queue.get_info(g).result))

    def test_requires_direct_children(self) -> None:
        if "forkserver" not in get_all_start_methods():
            self.skipTest("forkserver unavailable")
        detector = SignalDetector(chain=SignalChain(signal.SIGUSR2))
        with self.assertRaises(ValueError):
            detector.open(lambda worker: None, get_context("forkserver"))

    def test_private_chain(self) -> None:
        """A JobQueue runs to completion on a caller-provided chain."""
        original = signal.getsignal(signal.SIGCHLD)
        self.addCleanup(signal.signal, signal.SIGCHLD, original)
        for method in DIRECT:
            with self.subTest(method=method):
                chain = SignalChain(signal.SIGCHLD)
                queue = JobQueue(
                    context=method, detector=SignalDetector(chain=chain)
                )
                idents = [queue(len, "x" * i) for i in range(6)]
                queue.start(2)
                self.assertTrue(queue.wait_until_idle(timeout=60))
                self.assertEqual(
                    list(range(6)),
                    [queue.get_info(i).result for i in idents],
                )
                self.assertEqual(0, chain.subscribers)


if __name__ == "__main__":
    unittest.main()
