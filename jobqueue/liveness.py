# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""
Orphan prevention for worker processes.

Each worker may be paired with a LivenessChannel.  The coordinator holds
the only open write end and never writes to it.  When the coordinator
exits, however abruptly, the operating system closes that end and the
worker observes end-of-stream, whereupon it exits immediately.

Without a LivenessChannel a coordinator killed by, e.g., SIGKILL leaves
its workers running until their jobs complete.
"""
import logging
import os
import threading
import typing

from multiprocessing.connection import Connection, wait
from multiprocessing.context import BaseContext

_LOGGER = logging.getLogger(__name__)

# Exit status of a worker that abandoned its job after losing its parent
ORPHANED_EXIT_STATUS = 125


class LivenessChannel:
    """Coordinator-side handle on one worker's lifeline."""

    __slots__ = ("_reader", "_writer")

    def __init__(self, context: BaseContext) -> None:
        reader, writer = context.Pipe(duplex=False)
        self._reader = reader  # type: typing.Optional[Connection]
        self._writer = writer  # type: typing.Optional[Connection]

    def child_ends(self) -> typing.Tuple[Connection, Connection]:
        """Both ends, handed to the child so it may close the writer."""
        assert self._reader is not None and self._writer is not None
        return self._reader, self._writer

    def release_child_end(self) -> None:
        """Close the coordinator's copy of the reading end."""
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.close()

    def close(self) -> None:
        """Close all ends still held, which a live child sees as EOF."""
        self.release_child_end()
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()


def watch_parent(reader: Connection, writer: Connection) -> threading.Thread:
    """
    Called within a worker, exit the worker when its coordinator vanishes.

    The inherited writer is closed first as otherwise the worker would keep
    its own lifeline open forever.
    """
    writer.close()
    thread = threading.Thread(
        target=_watch,
        args=(reader,),
        daemon=True,
        name="jobqueue-lifeline",
    )
    thread.start()
    return thread


def _watch(reader: Connection) -> None:
    while True:
        wait((reader,))
        try:
            reader.recv_bytes()
        except (EOFError, OSError):
            break
    _LOGGER.debug("Worker %d lost its coordinator", os.getpid())
    # Interrupting the main thread cannot break out of blocking calls.
    os._exit(ORPHANED_EXIT_STATUS)
