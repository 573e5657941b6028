# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for result framing, Codecs, ResultChannel, and IdleGate."""
import os
import struct
import threading
import time
import unittest

from multiprocessing import get_all_start_methods, get_context

from .channel import (
    Codec,
    Err,
    IdleGate,
    Ok,
    PickleCodec,
    ResultChannel,
    Wrapper,
    send_frame,
)
from .errors import DecodeError


class ReversingCodec(Codec):
    """A toy Codec for bytes permitting mismatches to be detected."""

    def encode(self, value: bytes) -> bytes:
        return value[::-1]

    def decode(self, payload: bytes) -> bytes:
        return payload[::-1]


class FrameTest(unittest.TestCase):
    """Framing distinguishes results, failures, and garbage."""

    def test_ok(self) -> None:
        codec = PickleCodec()
        for value in (None, 0, "", b"", [1, "two", 3.0], {"k": (1, 2)}):
            with self.subTest(value=value):
                frame = Ok(codec.encode(value), codec.tag).to_frame()
                wrapper = Wrapper.from_frame(frame)
                self.assertIsInstance(wrapper, Ok)
                assert isinstance(wrapper, Ok)
                self.assertEqual(value, wrapper.decode(codec))

    def test_empty_payload(self) -> None:
        """A zero-length payload is a legitimate result, not a failure."""
        frame = Ok(b"", "ReversingCodec").to_frame()
        wrapper = Wrapper.from_frame(frame)
        self.assertEqual(Ok(b"", "ReversingCodec"), wrapper)
        assert isinstance(wrapper, Ok)
        self.assertEqual(b"", wrapper.decode(ReversingCodec()))

    def test_err(self) -> None:
        frame = Err("ValueError: naïve").to_frame()
        self.assertEqual(Err("ValueError: naïve"), Wrapper.from_frame(frame))

    def test_malformed(self) -> None:
        for frame in (
            b"",
            b"X",
            b"Xpayload",
            b"O",
            b"O\x00",
            b"O" + struct.pack(">H", 5) + b"ab",
            b"O" + struct.pack(">H", 2) + b"\xff\xfe",
        ):
            with self.subTest(frame=frame):
                with self.assertRaises(DecodeError):
                    Wrapper.from_frame(frame)

    def test_mismatched_codec(self) -> None:
        ok = Ok(PickleCodec().encode(1), PickleCodec().tag)
        with self.assertRaises(DecodeError):
            ok.decode(ReversingCodec())

    def test_undecodable_payload(self) -> None:
        ok = Ok(b"definitely not a pickle", PickleCodec().tag)
        with self.assertRaises(DecodeError) as c:
            ok.decode(PickleCodec())
        self.assertIsNotNone(c.exception.__cause__)

    def test_codec_tag(self) -> None:
        self.assertEqual("PickleCodec", PickleCodec().tag)
        self.assertEqual("ReversingCodec", ReversingCodec().tag)


class ResultChannelTest(unittest.TestCase):
    """ResultChannel distinguishes a frame from hanging up."""

    def test_frame(self) -> None:
        channel = ResultChannel(get_context())
        send_frame(channel.child_end(), Err("boom"))
        channel.release_child_end()
        frame = channel.receive()
        assert frame is not None
        self.assertEqual(Err("boom"), Wrapper.from_frame(frame))

    def test_hang_up(self) -> None:
        channel = ResultChannel(get_context())
        channel.release_child_end()
        self.assertIsNone(channel.receive())

    def test_truncated(self) -> None:
        """A writer dying mid-frame yields no frame at all."""
        channel = ResultChannel(get_context())
        writer = channel.child_end()
        # Mimic the length header used by Connection.send_bytes(...)
        os.write(writer.fileno(), struct.pack("!i", 100) + b"abc")
        channel.release_child_end()
        self.assertIsNone(channel.receive())

    def test_close(self) -> None:
        channel = ResultChannel(get_context())
        channel.close()
        channel.close()  # Idempotent


class IdleGateTest(unittest.TestCase):
    """IdleGate releases waiters exactly once and then never blocks."""

    def test_release(self) -> None:
        gate = IdleGate()
        self.assertFalse(gate.released())
        self.assertFalse(gate.wait(timeout=0))
        self.assertTrue(gate.release())
        self.assertFalse(gate.release(), "Only the first release counts")
        self.assertTrue(gate.released())
        self.assertTrue(gate.wait(timeout=0))
        self.assertTrue(gate.wait())
        self.assertTrue(gate.wait(timeout=0))

    def test_blocked_waiter(self) -> None:
        gate = IdleGate()
        observed = []
        thread = threading.Thread(
            target=lambda: observed.append(gate.wait(timeout=60))
        )
        thread.start()
        time.sleep(0.1)
        self.assertEqual([], observed, "Waiter must block before release")
        gate.release()
        thread.join(timeout=60)
        self.assertEqual([True], observed)

    def test_inherited_writer(self) -> None:
        """A forked child holding the write end does not delay release."""
        if "fork" not in get_all_start_methods():
            self.skipTest("fork unavailable")
        gate = IdleGate()
        bystander = get_context("fork").Process(target=time.sleep, args=(60,))
        bystander.start()
        try:
            gate.release()
            start = time.monotonic()
            self.assertTrue(gate.wait(timeout=5))
            self.assertLess(time.monotonic() - start, 5)
        finally:
            bystander.terminate()
            bystander.join()

    def test_timeout(self) -> None:
        gate = IdleGate()
        start = time.monotonic()
        self.assertFalse(gate.wait(timeout=0.1))
        self.assertGreaterEqual(time.monotonic() - start, 0.1)


if __name__ == "__main__":
    unittest.main()
