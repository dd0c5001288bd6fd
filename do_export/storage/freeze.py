"""Filesystem freeze/thaw around the capture window.

FreezeCoordinator is a scoped acquisition: freeze() acquires, thaw()
releases, and thaw() is safe to call any number of times. The orchestrator
calls thaw() from its outermost finally block so that no exit path can leave
a mount frozen.

Usage:
    coordinator = FreezeCoordinator(device)
    try:
        coordinator.freeze()
        capture(...)
    finally:
        coordinator.thaw()

    # or
    with FreezeCoordinator(device):
        capture(...)
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from do_export.domain import Device, FreezeState
from do_export.logging import LoggerFactory

from .devices import run_command
from .exceptions import FreezeFailedError
from .mounts import PROC_MOUNTS, freezable_mounts


log = LoggerFactory.for_freeze()

FSFREEZE = "fsfreeze"


def freeze_supported() -> bool:
    return shutil.which(FSFREEZE) is not None


class FreezeCoordinator:
    """Suspends and resumes writes on every mount backed by a device."""

    def __init__(self, device: Device, mounts_file: Path = PROC_MOUNTS):
        self.device = device
        self.mounts_file = mounts_file
        self.state = FreezeState.UNFROZEN
        self.frozen_mounts: list[str] = []
        self.failed_thaws: list[str] = []

    @property
    def is_frozen(self) -> bool:
        return self.state is FreezeState.FROZEN

    def freeze(self) -> None:
        """Freeze the device's MountSet in enumeration order.

        No-ops with a warning when fsfreeze is missing or nothing is mounted.
        Every mount frozen before a failure stays tracked for thaw().

        Raises:
            FreezeFailedError: If any mount cannot be frozen
        """
        if not freeze_supported():
            log.warning("fsfreeze not available - imaging live filesystem")
            return

        mountpoints = freezable_mounts(self.device, self.mounts_file)
        if not mountpoints:
            log.warning(
                f"No freezable mount points found for {self.device.device_path} "
                f"- imaging live"
            )
            return

        for mountpoint in mountpoints:
            log.info(f"Freezing: {mountpoint}")
            try:
                run_command([FSFREEZE, "-f", mountpoint], check=True)
            except (subprocess.CalledProcessError, OSError) as error:
                reason = getattr(error, "stderr", None) or str(error)
                raise FreezeFailedError(mountpoint, reason.strip()) from error
            self.frozen_mounts.append(mountpoint)
            self.state = FreezeState.FROZEN

    def thaw(self) -> bool:
        """Thaw every frozen mount; returns False if any thaw failed.

        A failed thaw is logged and the remaining mounts are still attempted.
        Each mount leaves frozen_mounts once its thaw has been attempted, so an
        interrupted thaw can be resumed without touching thawed mounts.
        Calling thaw() when nothing is frozen does nothing.
        """
        if self.state is not FreezeState.FROZEN:
            return self.state is not FreezeState.THAW_FAILED

        while self.frozen_mounts:
            mountpoint = self.frozen_mounts[0]
            log.info(f"Thawing: {mountpoint}")
            try:
                run_command([FSFREEZE, "-u", mountpoint], check=True)
            except (subprocess.CalledProcessError, OSError) as error:
                log.error(
                    f"Failed to thaw {mountpoint}: {error} "
                    f"- writers stay blocked until it is thawed manually "
                    f"(fsfreeze -u {mountpoint})"
                )
                self.failed_thaws.append(mountpoint)
            del self.frozen_mounts[0]

        if self.failed_thaws:
            self.state = FreezeState.THAW_FAILED
            return False
        self.state = FreezeState.UNFROZEN
        return True

    def __enter__(self) -> FreezeCoordinator:
        self.freeze()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.thaw()
