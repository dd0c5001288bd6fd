"""Export pipeline orchestration.

Stages run strictly in order:

    INIT -> RESOLVE_DEVICE -> RESOLVE_TARGET -> PREPARE_OUTPUT -> FREEZE
         -> CAPTURE -> THAW -> CONVERT -> CLEANUP_RAW -> TRANSFER -> DONE

Any fatal error moves the run to FAILED. Whenever FREEZE reached the frozen
state, the thaw runs before FAILED or DONE is entered: once inside the
capture block and again, idempotently, from the outermost finally of run().
Termination signals are turned into PipelineInterrupted while a run is in
progress so that the same finally blocks execute. They are held back while
a thaw is in flight and delivered once it has finished.

Only one run per device may execute at a time; callers must wait for the
success marker (or the process exit) of a run before starting another.
"""

from __future__ import annotations

import os
import shutil
import signal
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from do_export.config.settings import ExportSettings
from do_export.domain import (
    ArtifactPaths,
    CapturePlan,
    Device,
    ExportResult,
    ImageArtifact,
    ImageTarget,
    PipelineStage,
    RemoteVerification,
)
from do_export.logging import LoggerFactory, get_logger, new_job_id, operation_context
from do_export.services.transfer import transfer_artifact
from do_export.storage import convert, devices
from do_export.storage.exceptions import (
    MissingToolError,
    NotRootError,
    OutputError,
    PipelineInterrupted,
)
from do_export.storage.freeze import FreezeCoordinator
from do_export.storage.imaging import (
    capture,
    checksum_image,
    find_compressor,
    plan_capture,
    required_tools,
)
from do_export.storage.mounts import PROC_MOUNTS

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
LOW_SPACE_FRACTION = 4

log = get_logger(source="export", tags=["export"])


def _raise_interrupted(signum, frame):
    raise PipelineInterrupted(signum)


@contextmanager
def interrupt_on_signals(signals=HANDLED_SIGNALS):
    """Raise PipelineInterrupted from termination signals inside the block.

    Previous handlers are restored on exit. Outside the main thread signal
    handlers cannot be installed and the block runs unguarded.
    """
    previous = {}
    try:
        for signum in signals:
            previous[signum] = signal.signal(signum, _raise_interrupted)
    except ValueError:
        pass
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


@contextmanager
def signals_deferred(signals=HANDLED_SIGNALS):
    """Hold termination signals for the duration of the block.

    A signal arriving inside the block stays pending and is delivered when
    the previous signal mask is restored on exit.
    """
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, signals)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


def clear_success_marker(marker: Path) -> bool:
    """Remove a success marker left by an earlier run.

    Returns True if a marker was removed.

    Raises:
        OutputError: If the marker exists but cannot be removed
    """
    try:
        marker.unlink()
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError as error:
        raise OutputError(str(marker), error.strerror or str(error)) from error
    log.debug(f"Removed stale success marker {marker}")
    return True


class ExportPipeline:
    """One export run of one device."""

    def __init__(
        self,
        settings: ExportSettings,
        *,
        job_id: Optional[str] = None,
        mounts_file: Path = PROC_MOUNTS,
    ):
        self.settings = settings
        self.paths = ArtifactPaths(settings.output_dir)
        self.job_id = job_id or new_job_id()
        self.mounts_file = mounts_file
        self.log = LoggerFactory.for_export(self.job_id)
        self.stage = PipelineStage.INIT
        self.freezer: Optional[FreezeCoordinator] = None
        self.artifact: Optional[ImageArtifact] = None
        self.warnings: list[str] = []

    def _enter(self, stage: PipelineStage) -> None:
        self.stage = stage
        self.log.debug(f"Stage: {stage.value}")

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        self.log.warning(message)

    def run(self) -> ExportResult:
        """Execute every stage; returns the result or raises an ExportError.

        Raises:
            PreconditionError: Before anything is modified
            ResolutionError: If the device cannot be resolved
            FreezeFailedError, CaptureError, ConversionError, TransferError:
                From the stage that failed, after the thaw has run
            PipelineInterrupted: On SIGTERM, SIGINT or SIGHUP
        """
        started = time.time()
        with interrupt_on_signals():
            try:
                self.log.info(f"Export started ({self.job_id})")
                return self._run(started)
            except BaseException:
                self._enter(PipelineStage.FAILED)
                raise
            finally:
                self._thaw()

    def _run(self, started: float) -> ExportResult:
        self.preflight()

        self._enter(PipelineStage.RESOLVE_DEVICE)
        device = devices.resolve_device(self.settings.device)

        self._enter(PipelineStage.RESOLVE_TARGET)
        target = devices.resolve_image_target(device)
        plan = plan_capture(target, self.settings, self.paths)
        kind = "whole device" if target.is_whole_device else target.fstype or "unknown"
        self.log.info(
            f"Target: {target.path} ({kind}), strategy: {plan.strategy.value}, "
            f"compress at capture: {'yes' if plan.compress else 'no'}, "
            f"checksum: {'yes' if plan.checksum else 'no'}"
        )
        self.check_tools(plan)

        self._enter(PipelineStage.PREPARE_OUTPUT)
        self.prepare_output(device)

        with self._stage_context("capture", target=target.path):
            self.artifact = self.capture_frozen(device, target, plan)

        record = None
        if plan.checksum:
            with self._stage_context("checksum"):
                record = checksum_image(self.artifact.path, self.paths.checksum)

        self._enter(PipelineStage.CONVERT)
        image_format = self.settings.image_format
        if image_format.is_container:
            with self._stage_context("convert", image_format=image_format.value):
                self.artifact = convert.convert_image(
                    self.paths, image_format, self.settings.compress, self.settings.verify
                )
                self._enter(PipelineStage.CLEANUP_RAW)
                convert.remove_raw(self.paths)
        else:
            self.log.debug("Raw output requested - no conversion")
            self._enter(PipelineStage.CLEANUP_RAW)

        self._enter(PipelineStage.TRANSFER)
        if self.settings.remote is None:
            self.log.info("No remote target - skipping transfer")
            verification = RemoteVerification.SKIPPED
        else:
            with self._stage_context("transfer", remote=str(self.settings.remote)):
                verification = self.transfer()

        self._enter(PipelineStage.DONE)
        self.summarize()
        self.write_marker()
        return ExportResult(
            artifact=self.artifact,
            strategy=plan.strategy,
            checksum=record,
            remote_verification=verification,
            elapsed_seconds=round(time.time() - started, 2),
            warnings=tuple(self.warnings),
        )

    def _stage_context(self, operation: str, **details):
        return operation_context(operation, job_id=self.job_id, **details)

    def preflight(self) -> None:
        """Checks that need nothing but the settings.

        The stale success marker goes first so that no failure, this one
        included, can leave an earlier run's marker behind.

        Raises:
            OutputError: If the stale marker cannot be removed
            NotRootError: If not running as root
            MissingToolError: If lsblk is not installed
        """
        self._enter(PipelineStage.INIT)
        clear_success_marker(self.settings.success_marker)
        euid = os.geteuid()
        if euid != 0:
            raise NotRootError(euid)
        if shutil.which("lsblk") is None:
            raise MissingToolError("lsblk", "device detection")

    def check_tools(self, plan: CapturePlan) -> None:
        """Raises MissingToolError for the first command the plan lacks."""
        for tool, purpose in required_tools(plan, self.settings):
            if tool == "gzip":
                available = find_compressor() is not None
            else:
                available = shutil.which(tool) is not None
            if not available:
                raise MissingToolError(tool, purpose)

    def prepare_output(self, device: Device) -> None:
        """Create the output directory and sweep artifacts of earlier runs.

        Raises:
            OutputError: If the directory cannot be created or swept
        """
        output_dir = self.paths.output_dir
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            for path in self.paths.all_paths():
                if path.exists():
                    path.unlink()
                    self.log.debug(f"Removed stale artifact {path.name}")
            free = shutil.disk_usage(output_dir).free
        except OSError as error:
            raise OutputError(
                str(error.filename or output_dir), error.strerror or str(error)
            ) from error

        if devices.is_on_device(output_dir, device):
            self._warn(
                f"Output directory {output_dir} is on {device.device_path}, "
                f"the disk being captured"
            )

        if device.size_bytes > 0 and free < device.size_bytes / LOW_SPACE_FRACTION:
            self._warn(
                f"Low space in {output_dir}: {devices.human_size(free)} free "
                f"for a {devices.human_size(device.size_bytes)} device"
            )

    def capture_frozen(
        self, device: Device, target: ImageTarget, plan: CapturePlan
    ) -> ImageArtifact:
        """FREEZE, CAPTURE and THAW; the thaw runs even if capture fails."""
        self.freezer = FreezeCoordinator(device, self.mounts_file)
        try:
            self._enter(PipelineStage.FREEZE)
            self.freezer.freeze()
            self._enter(PipelineStage.CAPTURE)
            self.log.info(f"Imaging {target.path} -> {plan.output_path}")
            artifact = capture(plan)
        except BaseException:
            self._thaw()
            raise
        self._enter(PipelineStage.THAW)
        self._thaw()
        return artifact

    def _thaw(self) -> None:
        if self.freezer is None or not self.freezer.is_frozen:
            return
        with signals_deferred():
            thawed = self.freezer.thaw()
        if not thawed:
            self._warn(
                "Thaw failed for: " + ", ".join(self.freezer.failed_thaws)
            )

    def transfer(self) -> RemoteVerification:
        remote = self.settings.remote
        verification = transfer_artifact(
            self.paths, self.settings.image_format, remote, self.settings.verify
        )
        if verification is RemoteVerification.MISMATCH:
            self.warnings.append(f"Remote verification failed on {remote.target}")
        return verification

    def summarize(self) -> None:
        self.log.info(f"Output in {self.paths.output_dir}:")
        for path in sorted(self.paths.output_dir.iterdir()):
            if path.is_file():
                self.log.info(f"  {path.name} ({devices.human_size(path.stat().st_size)})")

    def write_marker(self) -> Path:
        """Write the success marker; the last action of a successful run.

        Raises:
            OutputError: If the marker cannot be written
        """
        marker = self.settings.success_marker
        try:
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.write_text(
                f"{datetime.now().isoformat(timespec='seconds')} {self.artifact.path}\n",
                encoding="utf-8",
            )
        except OSError as error:
            raise OutputError(str(marker), error.strerror or str(error)) from error
        self.log.success(f"Export complete: {self.artifact.path}")
        return marker


def run_export(settings: ExportSettings, **kwargs) -> ExportResult:
    return ExportPipeline(settings, **kwargs).run()
