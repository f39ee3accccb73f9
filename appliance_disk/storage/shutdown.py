"""Interrupt-safe release of a disk image.

A build that dies with loop devices bound and partitions mounted leaves the
host dirty until someone runs losetup/kpartx/umount by hand. ShutdownScope
makes sure release() and cleanup() run exactly once, whether the block exits
normally, raises, or the process receives SIGHUP, SIGINT or SIGTERM.

Usage:
    from appliance_disk.storage.shutdown import ShutdownScope

    with ShutdownScope(image):
        image.parse()
        image.customize(filler)
        ...

On a signal the scope releases and cleans up, then raises
SystemExit(128 + signum). A signal that arrives while a release is already
running is logged and otherwise ignored so the running release can finish.
"""

from __future__ import annotations

import signal
import threading
from typing import TYPE_CHECKING, Iterable

from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.exceptions import ImageError

if TYPE_CHECKING:
    from appliance_disk.storage.image import DiskImage


log = LoggerFactory.for_system()

SHUTDOWN_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM)


class ShutdownScope:
    def __init__(
        self, image: DiskImage, signals: Iterable[signal.Signals] = SHUTDOWN_SIGNALS
    ) -> None:
        self.image = image
        self.signals = tuple(signals)
        self._lock = threading.Lock()
        self._done = False
        self._previous: dict = {}

    def __enter__(self) -> "ShutdownScope":
        try:
            for signum in self.signals:
                self._previous[signum] = signal.signal(signum, self._handle)
        except ValueError:
            # signal.signal only works in the main thread
            log.warning("Not in the main thread, interrupts will not release the image")
            self._restore()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        # handlers stay installed until teardown finishes
        try:
            self.shutdown()
        except ImageError as error:
            if exc_type is None:
                raise
            log.error(f"Release after failure did not complete: {error}")
        finally:
            self._restore()
        return False

    @property
    def done(self) -> bool:
        return self._done

    def shutdown(self) -> bool:
        """Release and clean up the image once.

        Returns True if this call did the work.
        """
        if not self._lock.acquire(blocking=False):
            return False
        try:
            if self._done:
                return False
            self.image.release()
            self.image.cleanup()
            self._done = True
            return True
        finally:
            self._lock.release()

    def _handle(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        if self._lock.locked():
            log.warning(f"Received {name} while releasing, waiting for release to finish")
            return
        log.warning(f"Received {name}, releasing image")
        try:
            self.shutdown()
        except ImageError as error:
            log.error(f"Release on {name} did not complete: {error}")
        raise SystemExit(128 + signum)

    def _restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
