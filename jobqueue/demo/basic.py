# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Basic JobQueue usage."""
from logging import INFO, basicConfig, info

from ..impl import JobQueue
from ..worker import State


def square(x: int) -> int:
    return x * x


def main() -> None:
    queue = JobQueue()

    # Add work using the __call__ shorthand
    a = queue(square, 5)
    b = queue(square, 7)

    # Add work using the explicit add() method and a label
    c = queue.add(fn=len, args=("hello",), label="length")
    assert c == "length"

    # Run at most 2 jobs at once then block until all complete
    queue.start(2)
    queue.wait_until_idle()
    assert queue.finished()

    # Results are available per identity
    assert queue.get_info(a).result == 25
    assert queue.get_info(b).result == 49
    assert queue.get_info(c).result == 5
    assert queue.get_info(c).state is State.FINISHED

    # Waiting again returns immediately
    assert queue.wait_until_idle(timeout=0)
    info("basic: OK")


if __name__ == "__main__":
    basicConfig(
        level=INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    main()
