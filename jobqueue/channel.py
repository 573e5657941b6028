# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Result transport between worker processes and the coordinator."""
import abc
import os
import struct
import threading
import typing

from multiprocessing.connection import Connection, wait
from multiprocessing.context import BaseContext
from multiprocessing.reduction import ForkingPickler  # type: ignore

from .errors import DecodeError

# Frame kinds written as the first byte of every frame
_OK = b"O"
_ERR = b"E"

# Length of the tag which follows an _OK kind byte
_TAG_LENGTH = struct.Struct(">H")


class Codec(abc.ABC):
    """
    Converts values to and from the bytes carried by a ResultChannel.

    Instances are sent to worker processes and so must be picklable.
    """

    @property
    def tag(self) -> str:
        """Names the encoding so that mismatched codecs are detectable."""
        return type(self).__name__

    @abc.abstractmethod
    def encode(self, value: typing.Any) -> bytes:
        raise NotImplementedError()

    @abc.abstractmethod
    def decode(self, payload: bytes) -> typing.Any:
        raise NotImplementedError()


class PickleCodec(Codec):
    """Codec using the same pickler as multiprocessing itself."""

    def encode(self, value: typing.Any) -> bytes:
        return bytes(ForkingPickler.dumps(value))

    def decode(self, payload: bytes) -> typing.Any:
        return ForkingPickler.loads(payload)


class Wrapper(abc.ABC):
    """Tracks whether a frame reports a returned value or a raised error."""

    __slots__ = ()

    @abc.abstractmethod
    def to_frame(self) -> bytes:
        """Serialize into the framing understood by from_frame(...)."""
        raise NotImplementedError()

    @staticmethod
    def from_frame(frame: bytes) -> "Wrapper":
        """Parse one frame raising DecodeError when malformed."""
        kind, body = frame[:1], frame[1:]
        if kind == _OK:
            if len(body) < _TAG_LENGTH.size:
                raise DecodeError("Truncated result frame")
            (length,) = _TAG_LENGTH.unpack_from(body)
            start = _TAG_LENGTH.size
            if len(body) < start + length:
                raise DecodeError("Truncated codec tag in result frame")
            try:
                tag = body[start:start + length].decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError("Codec tag is not UTF-8") from e
            return Ok(body[start + length:], tag)
        if kind == _ERR:
            return Err(body.decode("utf-8", errors="replace"))
        if not kind:
            raise DecodeError("Empty result frame")
        raise DecodeError("Unknown frame kind {!r}".format(kind))


# Ok retains the payload as bytes and decoding is deferred to the Codec.
# Hence transport is byte-accurate regardless of what the Codec does.
class Ok(Wrapper):
    """Specialization of Wrapper for when a result is available."""

    __slots__ = ("payload", "tag")

    def __init__(self, payload: bytes, tag: str) -> None:
        self.payload = payload
        self.tag = tag

    def to_frame(self) -> bytes:
        tag = self.tag.encode("utf-8")
        return _OK + _TAG_LENGTH.pack(len(tag)) + tag + self.payload

    def decode(self, codec: Codec) -> typing.Any:
        """Decode the payload with codec raising DecodeError on failure."""
        if self.tag != codec.tag:
            raise DecodeError(
                "Result encoded by {} cannot be decoded by {}".format(
                    self.tag, codec.tag
                )
            )
        try:
            return codec.decode(self.payload)
        except Exception as e:
            raise DecodeError("Undecodable result: {}".format(e)) from e

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ok):
            return NotImplemented
        return (self.payload, self.tag) == (other.payload, other.tag)

    def __repr__(self) -> str:
        return "Ok({!r}, {!r})".format(self.payload, self.tag)


class Err(Wrapper):
    """Specialization of Wrapper for when the job raised an Exception."""

    __slots__ = ("message",)

    def __init__(self, message: str) -> None:
        self.message = message

    def to_frame(self) -> bytes:
        return _ERR + self.message.encode("utf-8", errors="replace")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Err):
            return NotImplemented
        return self.message == other.message

    def __repr__(self) -> str:
        return "Err({!r})".format(self.message)


class ResultChannel:
    """
    A one-way channel carrying exactly one frame from child to coordinator.

    Why a Pipe instead of a Queue?  Pipes can detect EOFError!  Moreover,
    Connection.send_bytes(...) is length-prefixed so "no data yet",
    "hung up without a frame", and "a frame" are all distinguishable.
    Connections are unbuffered so a written frame is observable at once.
    """

    __slots__ = ("_reader", "_writer")

    def __init__(self, context: BaseContext) -> None:
        reader, writer = context.Pipe(duplex=False)
        self._reader = reader  # type: typing.Optional[Connection]
        self._writer = writer  # type: typing.Optional[Connection]

    @property
    def reader(self) -> Connection:
        """The coordinator's end, usable with multiprocessing wait(...)."""
        assert self._reader is not None, "Reader already closed"
        return self._reader

    def child_end(self) -> Connection:
        """The end handed to the child process prior to its start."""
        assert self._writer is not None, "Writer already released"
        return self._writer

    def release_child_end(self) -> None:
        """Close the coordinator's copy of the child's end."""
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()

    def receive(self) -> typing.Optional[bytes]:
        """
        Block until one frame or end-of-stream then close the reader.

        Returns None whenever the other end hung up without a whole frame.
        """
        reader = self.reader
        try:
            return reader.recv_bytes()
        except EOFError:
            return None
        except OSError:
            # Raised for "got end of file during message" on short frames
            return None
        finally:
            self._reader = None
            reader.close()

    def close(self) -> None:
        """Close any ends still held."""
        self.release_child_end()
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.close()


def send_frame(writer: Connection, wrapper: Wrapper) -> None:
    """Child-side counterpart to ResultChannel.receive(...)."""
    # Ignore broken pipes which naturally occur when the destination
    # terminates (or otherwise hangs up) before the result is ready.
    try:
        writer.send_bytes(wrapper.to_frame())
    except BrokenPipeError:
        pass
    finally:
        writer.close()


class IdleGate:
    """
    A self-notification primitive closed exactly once upon quiescence.

    The releasing side writes one byte to a pipe and closes its write end.
    The first waiter to see the read end become readable closes that end
    so that every subsequent wait(...) returns immediately.

    Writing, rather than only closing, matters because forked children
    inherit the write end.  End-of-stream would then be deferred until
    every such unrelated child had exited.
    """

    __slots__ = ("_reader", "_writer", "_read_lock", "_write_lock")

    def __init__(self) -> None:
        reader, writer = os.pipe()
        self._reader = reader  # type: typing.Optional[int]
        self._writer = writer  # type: typing.Optional[int]
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def released(self) -> bool:
        """Has release() been called?  Never blocks."""
        with self._write_lock:
            return self._writer is None

    def release(self) -> bool:
        """Release all waiters returning False when already released."""
        with self._write_lock:
            if self._writer is None:
                return False
            writer, self._writer = self._writer, None
        try:
            os.write(writer, b"\0")
        finally:
            os.close(writer)
        return True

    def wait(self, timeout: typing.Optional[float] = None) -> bool:
        """
        Block until released returning False should timeout expire first.

        Timeout is given in seconds with None meaning to block indefinitely.
        """
        # Waiters serialize so only one ever closes the descriptor
        with self._read_lock:
            if self._reader is None:
                return True
            if not wait((self._reader,), timeout=timeout):
                return False
            # Readable means released whether by the byte or end-of-stream
            reader, self._reader = self._reader, None
        os.close(reader)
        return True

    def __del__(self) -> None:
        for name in ("_reader", "_writer"):
            fd = getattr(self, name, None)
            if fd is not None:
                try:
                    os.close(fd)
                except OSError:
                    pass
