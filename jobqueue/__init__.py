# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""
A bounded JobQueue running each job in its own process.

This JobQueue is similar in spirit to multiprocessing.Pool with a few
differences:

 * First, every job gets a fresh process so nothing leaks between jobs
   and a crashing job cannot corrupt the coordinator.
 * Second, at most capacity processes run at once with each completion
   refilling exactly one slot in first-in, first-out order.
 * Third, completion detection is pluggable.  Callers may drive the queue
   synchronously, let one thread watch each worker, or react to SIGCHLD
   while chaining any previously installed handler.
 * Fourth, results cross the process boundary as length-prefixed frames
   decoded by a pluggable Codec, so a worker dying mid-write is never
   mistaken for a result.
 * Fifth, one failing job never stops the queue.  Failures are recorded
   and reported per job by get_info(...).
 * Lastly, workers can optionally detect the death of the coordinator and
   exit rather than linger as orphans.

Implementation passes both PEP 8 (per flake8) and type-hinting (per mypy).
"""
from .channel import Codec, PickleCodec
from .detector import (
    CHILD_SIGNALS,
    CompletionDetector,
    ReadinessDetector,
    SignalChain,
    SignalDetector,
    WatcherDetector,
)
from .errors import (
    AlreadyStarted,
    DecodeError,
    JobError,
    JobPanic,
    ReapError,
    SpawnError,
    WorkerDied,
)
from .impl import JobQueue
from .liveness import ORPHANED_EXIT_STATUS
from .worker import Info, State, Worker

__all__ = [
    "AlreadyStarted",
    "CHILD_SIGNALS",
    "Codec",
    "CompletionDetector",
    "DecodeError",
    "Info",
    "JobError",
    "JobPanic",
    "JobQueue",
    "ORPHANED_EXIT_STATUS",
    "PickleCodec",
    "ReadinessDetector",
    "ReapError",
    "SignalChain",
    "SignalDetector",
    "SpawnError",
    "State",
    "WatcherDetector",
    "Worker",
    "WorkerDied",
]
