#!/usr/bin/env python3
"""
Tests for the reader/writer lock and cancellation token.
"""

import threading
import time

from concurrency import CancellationToken, ReadWriteLock


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def reader():
            with lock.read_locked():
                acquired.set()

        thread = threading.Thread(target=reader)
        thread.start()
        thread.join(timeout=2)
        lock.release_read()

        assert acquired.is_set()

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        order = []

        lock.acquire_write()

        def reader():
            with lock.read_locked():
                order.append("reader")

        thread = threading.Thread(target=reader)
        thread.start()
        time.sleep(0.05)
        order.append("writer")
        lock.release_write()
        thread.join(timeout=2)

        assert order == ["writer", "reader"]

    def test_write_lock_released_on_error(self):
        lock = ReadWriteLock()

        try:
            with lock.write_locked():
                raise RuntimeError("boom")
        except RuntimeError:
            pass

        with lock.write_locked():
            pass


class TestCancellationToken:
    def test_cancel(self):
        token = CancellationToken()

        assert token.is_cancelled() is False
        token.cancel()
        assert token.is_cancelled() is True
