"""Tests for lock manager."""

import fcntl
import os
import subprocess
import sys
from pathlib import Path
from unittest import mock

import pytest

from pcmd.core.lock_manager import acquire_or_report, exclusive_lock
from pcmd.errors import LockError


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "pcmd.bob.h1.lock"


class TestAcquireOrReport:
    """Tests for acquire_or_report function."""

    def test_acquire_creates_lock_file(self, lock_path: Path) -> None:
        """Acquiring the lock creates the lock file."""
        release, acquired = acquire_or_report(lock_path)
        try:
            assert acquired is True
            assert lock_path.exists()
        finally:
            release()

    def test_acquire_truncates_existing_file(self, lock_path: Path) -> None:
        """A stale file left behind is truncated and reused."""
        lock_path.write_text("leftover")
        release, acquired = acquire_or_report(lock_path)
        try:
            assert acquired is True
            assert lock_path.read_text() == ""
        finally:
            release()

    def test_contention_is_not_an_error(self, lock_path: Path) -> None:
        """A second acquirer sees acquired=False and a no-op release."""
        release, acquired = acquire_or_report(lock_path)
        try:
            other_release, other_acquired = acquire_or_report(lock_path)
            assert acquired is True
            assert other_acquired is False

            other_release()
            assert lock_path.exists()
        finally:
            release()

    def test_only_one_of_many_acquires(self, lock_path: Path) -> None:
        """At most one of N concurrent acquirers wins."""
        results = [acquire_or_report(lock_path) for _ in range(5)]
        try:
            assert [acquired for _, acquired in results].count(True) == 1
        finally:
            for release, _ in results:
                release()

    def test_held_by_other_process(self, lock_path: Path) -> None:
        """Exclusion holds across processes, not just descriptors."""
        holder = subprocess.Popen(
            [
                sys.executable,
                "-c",
                "import fcntl, os, sys, time\n"
                f"fd = os.open({str(lock_path)!r}, os.O_WRONLY | os.O_CREAT)\n"
                "fcntl.flock(fd, fcntl.LOCK_EX)\n"
                "print('locked', flush=True)\n"
                "sys.stdin.read()\n",
            ],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert holder.stdout is not None
            assert holder.stdout.readline().strip() == "locked"
            _, acquired = acquire_or_report(lock_path)
            assert acquired is False
        finally:
            holder.communicate("", timeout=10)

        release, acquired = acquire_or_report(lock_path)
        assert acquired is True
        release()

    def test_missing_directory_is_fatal(self, tmp_path: Path) -> None:
        """Failing to open the lock file raises LockError."""
        with pytest.raises(LockError, match="Could not open lock file"):
            acquire_or_report(tmp_path / "missing" / "pcmd.lock")

    def test_unexpected_flock_error_is_fatal(self, lock_path: Path) -> None:
        """flock errors other than contention raise LockError."""
        with (
            mock.patch(
                "pcmd.core.lock_manager.fcntl.flock", side_effect=OSError(9, "Bad file descriptor")
            ),
            pytest.raises(LockError, match="Could not lock"),
        ):
            acquire_or_report(lock_path)

    def test_retries_when_file_replaced_underneath(self, lock_path: Path) -> None:
        """Winning the lock on an unlinked inode retries against the new file."""
        checks = iter([False, True])
        with mock.patch(
            "pcmd.core.lock_manager._is_current_inode", side_effect=lambda fd, path: next(checks)
        ):
            release, acquired = acquire_or_report(lock_path)
        try:
            assert acquired is True
        finally:
            release()


class TestRelease:
    """Tests for the release function returned on acquisition."""

    def test_release_removes_lock_file(self, lock_path: Path) -> None:
        """Releasing deletes the lock file."""
        release, _ = acquire_or_report(lock_path)
        release()
        assert not lock_path.exists()

    def test_release_unlocks(self, lock_path: Path) -> None:
        """After release another acquirer wins."""
        release, _ = acquire_or_report(lock_path)
        release()
        release2, acquired = acquire_or_report(lock_path)
        assert acquired is True
        release2()

    def test_release_twice_is_safe(self, lock_path: Path) -> None:
        """Release only acts once."""
        release, _ = acquire_or_report(lock_path)
        release()
        lock_path.write_text("someone else's")
        release()
        assert lock_path.read_text() == "someone else's"

    def test_newer_holders_file_survives(self, lock_path: Path) -> None:
        """A release never deletes a file a newer holder created."""
        release, _ = acquire_or_report(lock_path)
        # Simulate the previous file disappearing and a newer holder taking over
        os.unlink(lock_path)
        newer_release, newer_acquired = acquire_or_report(lock_path)
        assert newer_acquired is True

        release()
        assert lock_path.exists()

        # The newer holder still holds it
        _, acquired = acquire_or_report(lock_path)
        assert acquired is False
        newer_release()
        assert not lock_path.exists()


class TestExclusiveLock:
    """Tests for the scoped exclusive_lock context manager."""

    def test_yields_acquired(self, lock_path: Path) -> None:
        with exclusive_lock(lock_path) as acquired:
            assert acquired is True
            assert lock_path.exists()
        assert not lock_path.exists()

    def test_yields_not_acquired_on_contention(self, lock_path: Path) -> None:
        with exclusive_lock(lock_path) as first, exclusive_lock(lock_path) as second:
            assert first is True
            assert second is False
            assert lock_path.exists()
        assert not lock_path.exists()

    def test_releases_on_exception(self, lock_path: Path) -> None:
        """The lock is released even when the body raises."""
        with pytest.raises(RuntimeError), exclusive_lock(lock_path):
            raise RuntimeError("boom")
        assert not lock_path.exists()
        with exclusive_lock(lock_path) as acquired:
            assert acquired is True

    def test_lock_is_really_exclusive(self, lock_path: Path) -> None:
        """The held descriptor blocks a raw flock from another open file."""
        with exclusive_lock(lock_path):
            fd = os.open(lock_path, os.O_RDONLY)
            try:
                with pytest.raises(BlockingIOError):
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            finally:
                os.close(fd)
