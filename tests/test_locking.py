"""Unit tests for the filesystem-visible interface lock."""

import json
import logging
import multiprocessing
import os
import threading
import time

import pytest

from mtu_tuner.exceptions import LockTimeoutError
from mtu_tuner.locking import InterfaceLock, pid_alive


def hold_lock_repeatedly(lock_dir, out_path, rounds):
    """Take the lock `rounds` times and log each (enter, exit) pair."""
    intervals = []
    for _ in range(rounds):
        with InterfaceLock("mtu-wg0", lock_dir, attempts=5000, backoff=0.002):
            entered = time.monotonic()
            time.sleep(0.01)
            exited = time.monotonic()
        intervals.append(f"{entered!r} {exited!r}\n")
    with open(out_path, "w") as f:
        f.writelines(intervals)


class TestInterfaceLock:
    """Acquisition, release and contention."""

    def test_acquire_writes_owner_metadata(self, tmp_path):
        lock = InterfaceLock("mtu-wg0", str(tmp_path))
        lock.acquire()
        try:
            owner = lock.owner()
            assert owner["pid"] == os.getpid()
            assert "acquired_at" in owner
            assert lock.held
        finally:
            lock.release()

    def test_release_clears_metadata(self, tmp_path):
        lock = InterfaceLock("mtu-wg0", str(tmp_path))
        with lock:
            pass
        assert not lock.held
        assert lock.owner() is None

    def test_release_is_idempotent(self, tmp_path):
        lock = InterfaceLock("mtu-wg0", str(tmp_path))
        lock.release()
        with lock:
            pass
        lock.release()

    def test_creates_lock_dir(self, tmp_path):
        lock_dir = tmp_path / "nested" / "locks"
        with InterfaceLock("mtu-wg0", str(lock_dir)):
            assert (lock_dir / "mtu-wg0.lock").exists()

    def test_contention_times_out(self, tmp_path):
        holder = InterfaceLock("mtu-wg0", str(tmp_path))
        contender = InterfaceLock("mtu-wg0", str(tmp_path), attempts=3, backoff=0.01,
                                  interface="wg0")
        with holder:
            with pytest.raises(LockTimeoutError) as exc_info:
                contender.acquire()
        assert exc_info.value.interface == "wg0"
        assert not contender.held

    def test_acquired_after_release(self, tmp_path):
        holder = InterfaceLock("mtu-wg0", str(tmp_path))
        contender = InterfaceLock("mtu-wg0", str(tmp_path), attempts=200, backoff=0.01)
        holder.acquire()
        timer = threading.Timer(0.1, holder.release)
        timer.start()
        try:
            contender.acquire()
            assert contender.held
        finally:
            contender.release()
            timer.join()

    def test_different_names_do_not_contend(self, tmp_path):
        with InterfaceLock("mtu-wg0", str(tmp_path)):
            with InterfaceLock("mtu-wg1", str(tmp_path), attempts=1):
                pass

    def test_threads_exclude_each_other(self, tmp_path):
        inside = []
        overlaps = []
        guard = threading.Lock()

        def worker():
            for _ in range(5):
                with InterfaceLock("mtu-wg0", str(tmp_path), attempts=500, backoff=0.005):
                    with guard:
                        if inside:
                            overlaps.append(1)
                        inside.append(1)
                    time.sleep(0.002)
                    with guard:
                        inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []


class TestInterfaceLockAcrossProcesses:
    """Separate processes serialize on the same lock file."""

    def test_processes_exclude_each_other(self, tmp_path):
        ctx = multiprocessing.get_context("fork")
        outputs = [tmp_path / f"intervals-{i}.txt" for i in range(3)]
        workers = [
            ctx.Process(target=hold_lock_repeatedly,
                        args=(str(tmp_path / "locks"), str(out), 5))
            for out in outputs
        ]
        for p in workers:
            p.start()
        for p in workers:
            p.join(timeout=60)
        assert [p.exitcode for p in workers] == [0, 0, 0]

        intervals = []
        for out in outputs:
            for line in out.read_text().splitlines():
                entered, exited = line.split()
                intervals.append((float(entered), float(exited)))
        intervals.sort()
        assert len(intervals) == 15
        for (_, previous_exit), (next_enter, _) in zip(intervals, intervals[1:]):
            assert next_enter >= previous_exit

    def test_lock_held_by_other_process_times_out(self, tmp_path):
        ctx = multiprocessing.get_context("fork")
        acquired = ctx.Event()
        release = ctx.Event()

        def hold():
            with InterfaceLock("mtu-wg0", str(tmp_path)):
                acquired.set()
                release.wait(30)

        holder = ctx.Process(target=hold)
        holder.start()
        try:
            assert acquired.wait(30)
            contender = InterfaceLock("mtu-wg0", str(tmp_path), attempts=3, backoff=0.01)
            with pytest.raises(LockTimeoutError):
                contender.acquire()
            assert contender.owner()["pid"] == holder.pid
        finally:
            release.set()
            holder.join(timeout=30)
        assert holder.exitcode == 0


class TestStaleLock:
    """Recovery of locks left behind by dead holders."""

    def test_dead_owner_is_reclaimed_with_warning(self, tmp_path, caplog):
        path = tmp_path / "mtu-wg0.lock"
        path.write_text(json.dumps({"pid": 999999999, "host": "gone"}))
        lock = InterfaceLock("mtu-wg0", str(tmp_path), attempts=1)
        with caplog.at_level(logging.WARNING, logger="mtu_tuner.locking"):
            lock.acquire()
        try:
            assert "stale" in caplog.text
            assert lock.owner()["pid"] == os.getpid()
        finally:
            lock.release()

    def test_pid_alive(self):
        assert pid_alive(os.getpid())
        assert not pid_alive(0)
        assert not pid_alive(999999999)
