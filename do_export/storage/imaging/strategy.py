"""Capture planning.

The plan is decided once, before the freeze, from the image target and the
settings. Nothing here touches the system except the compressor lookup.
"""

from __future__ import annotations

import shutil

from do_export.config.settings import ExportSettings
from do_export.domain import (
    ArtifactPaths,
    CapturePlan,
    CaptureStrategy,
    ImageTarget,
)

SPARSE_TOOL = "e2image"
FULL_COPY_TOOL = "dd"
CHECKSUM_TOOL = "sha256sum"
CONVERT_TOOL = "qemu-img"
REMOTE_TOOLS = ("rsync", "ssh")
COMPRESSORS = ("pigz", "gzip")


def select_strategy(target: ImageTarget) -> CaptureStrategy:
    """Sparse capture for ext-family partitions, full copy for anything else."""
    if target.is_ext_family:
        return CaptureStrategy.SPARSE
    return CaptureStrategy.FULL_COPY


def plan_capture(
    target: ImageTarget, settings: ExportSettings, paths: ArtifactPaths
) -> CapturePlan:
    compress = settings.compress_at_capture
    output_path = paths.compressed if compress else paths.raw
    return CapturePlan(
        strategy=select_strategy(target),
        source=target.path,
        output_path=output_path,
        compress=compress,
        # The digest only ever describes uncompressed raw bytes
        checksum=settings.verify and not compress,
        size_bytes=target.size_bytes,
    )


def find_compressor() -> str | None:
    """pigz when installed, else gzip."""
    for tool in COMPRESSORS:
        if shutil.which(tool):
            return tool
    return None


def required_tools(plan: CapturePlan, settings: ExportSettings) -> list[tuple[str, str]]:
    """List (tool, purpose) pairs the run needs, in the order they are used.

    The compressor is reported as gzip since pigz is optional.
    """
    tools = []
    if plan.strategy is CaptureStrategy.SPARSE:
        tools.append((SPARSE_TOOL, "sparse capture"))
    else:
        tools.append((FULL_COPY_TOOL, "full copy"))
    if plan.compress:
        tools.append(("gzip", "compression"))
    if plan.checksum:
        tools.append((CHECKSUM_TOOL, "checksum"))
    if settings.image_format.is_container:
        tools.append((CONVERT_TOOL, f"{settings.image_format.value} conversion"))
    if settings.remote is not None:
        tools.extend((tool, "remote transfer") for tool in REMOTE_TOOLS)
    return tools
