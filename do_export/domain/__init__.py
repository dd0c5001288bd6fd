"""Domain models for device export runs."""

from __future__ import annotations

from .models import (
    EXT_FAMILY,
    ArtifactForm,
    ArtifactPaths,
    CapturePlan,
    CaptureStrategy,
    ChecksumRecord,
    Device,
    ExportResult,
    FreezeState,
    ImageArtifact,
    ImageFormat,
    ImageTarget,
    Partition,
    PipelineStage,
    RemoteDestination,
    RemoteVerification,
)


__all__ = [
    "EXT_FAMILY",
    "ArtifactForm",
    "ArtifactPaths",
    "CapturePlan",
    "CaptureStrategy",
    "ChecksumRecord",
    "Device",
    "ExportResult",
    "FreezeState",
    "ImageArtifact",
    "ImageFormat",
    "ImageTarget",
    "Partition",
    "PipelineStage",
    "RemoteDestination",
    "RemoteVerification",
]
