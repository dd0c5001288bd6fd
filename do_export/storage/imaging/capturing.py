"""Capture the image target into the raw or compressed artifact.

Sparse capture:
    e2image -rap <partition> <out>        (raw)
    e2image -rap <partition> - | gzip -1 -c > <out>.gz

Full copy:
    dd if=<target> bs=4M status=progress of=<out>
    dd if=<target> bs=4M status=progress | gzip -1 -c > <out>.gz

A failed capture leaves whatever was written in place for inspection.
"""

from __future__ import annotations

from do_export.domain import CapturePlan, CaptureStrategy, ImageArtifact
from do_export.logging import LoggerFactory

from ..devices import human_size
from ..exceptions import CaptureError, CommandError, MissingToolError
from .command_runners import run_pipeline, run_with_progress
from .progress import ProgressReporter
from .strategy import FULL_COPY_TOOL, SPARSE_TOOL, find_compressor

log = LoggerFactory.for_imaging()

DD_BLOCK_SIZE = "4M"
COMPRESSION_LEVEL = "-1"


def build_capture_command(plan: CapturePlan, to_stdout: bool) -> list[str]:
    if plan.strategy is CaptureStrategy.SPARSE:
        destination = "-" if to_stdout else str(plan.output_path)
        return [SPARSE_TOOL, "-rap", plan.source, destination]
    command = [FULL_COPY_TOOL, f"if={plan.source}", f"bs={DD_BLOCK_SIZE}", "status=progress"]
    if not to_stdout:
        command.append(f"of={plan.output_path}")
    return command


def build_compress_command(compressor: str) -> list[str]:
    return [compressor, COMPRESSION_LEVEL, "-c"]


def capture(plan: CapturePlan) -> ImageArtifact:
    """Run the planned capture and return the artifact it produced.

    Raises:
        CaptureError: If the reader, the compressor or the output sink fails
        MissingToolError: If compression is planned but no gzip is installed
    """
    label = "e2image" if plan.strategy is CaptureStrategy.SPARSE else "dd"
    reporter = ProgressReporter(f"Capture ({label})", plan.size_bytes)
    plan.output_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        if plan.compress:
            compressor = find_compressor()
            if compressor is None:
                raise MissingToolError("gzip", "compression")
            log.info(
                f"Capturing {plan.source} with {label} | {compressor} "
                f"-> {plan.output_path.name}"
            )
            run_pipeline(
                build_capture_command(plan, to_stdout=True),
                build_compress_command(compressor),
                plan.output_path,
                on_line=reporter,
            )
        else:
            log.info(f"Capturing {plan.source} with {label} -> {plan.output_path.name}")
            run_with_progress(build_capture_command(plan, to_stdout=False), on_line=reporter)
    except (CommandError, OSError) as error:
        raise CaptureError(
            f"Capture of {plan.source} failed: {error}",
            source=plan.source,
            destination=str(plan.output_path),
        ) from error

    if not plan.output_path.is_file():
        raise CaptureError(
            f"Capture produced no output at {plan.output_path}",
            source=plan.source,
            destination=str(plan.output_path),
        )

    size = plan.output_path.stat().st_size
    log.info(f"Image created: {plan.output_path.name} ({human_size(size)})")
    if plan.compress:
        return ImageArtifact.compressed(plan.output_path)
    return ImageArtifact.raw(plan.output_path)
