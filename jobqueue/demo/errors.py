# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Failures in workers are recorded per job."""
import os
import signal
from logging import INFO, basicConfig, info

from ..errors import JobPanic, WorkerDied
from ..impl import JobQueue
from ..worker import State


def raise_error(message: str) -> None:
    raise ValueError(message)


def kill_self() -> None:
    os.kill(os.getpid(), signal.SIGKILL)


def length(s: str) -> int:
    return len(s)


def main() -> None:
    queue = JobQueue()
    err = queue(raise_error, "oops")
    died = queue(kill_self)
    ok = queue(length, "hello")
    queue.start(1)

    # Idle means no more work to schedule, not that everything succeeded
    queue.wait_until_idle()

    # Exceptions in workers are reported as JobPanic
    panic = queue.get_info(err)
    assert panic.state is State.ERRORED
    assert isinstance(panic.error, JobPanic)
    assert "oops" in panic.message

    # Worker death is detected via WorkerDied
    assert isinstance(queue.get_info(died).error, WorkerDied)

    # Neither failure blocked the slot for later work
    assert queue.get_info(ok).result == 5
    info("errors: OK")


if __name__ == "__main__":
    basicConfig(
        level=INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    main()
