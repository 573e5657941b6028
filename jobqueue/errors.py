# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Exceptions reported by a JobQueue and its Workers."""
import typing


class AlreadyStarted(Exception):
    """Reports JobQueue.add(...) or JobQueue.start(...) after start(...)."""

    pass


class JobError(Exception):
    """
    Base class for failures isolated to a single job.

    A JobError never halts a JobQueue.  It is recorded on the job and
    reported through JobQueue.get_info(...).
    """

    pass


class SpawnError(JobError):
    """Reports that a process could not be created for some job."""

    pass


class JobPanic(JobError):
    """
    Reports that a job raised rather than returned within its process.

    The message is the human-readable text reported by the child process.
    Member exitcode is the child's exit status when known.
    """

    def __init__(
        self, message: str, exitcode: typing.Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.exitcode = exitcode


class WorkerDied(JobPanic):
    """
    Reports a job's process exited without reporting any result.

    Work that is killed, terminated, interrupted, etc. raises this exception.
    """

    pass


class DecodeError(JobError):
    """Reports bytes from a ResultChannel that do not decode as a value."""

    pass


class ReapError(Exception):
    """
    Reports a tracked process whose exit could not be confirmed.

    This is an internal consistency violation, not a job failure.  For
    example, some other code in this process reaped the child first.
    """

    pass
