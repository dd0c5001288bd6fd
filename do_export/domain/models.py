"""Domain model for a device export run.

Every object here is created and discarded within a single run. Only the
files named by ArtifactPaths and the success marker outlive the process.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


EXT_FAMILY = frozenset({"ext2", "ext3", "ext4"})

REMOTE_TARGET_PATTERN = re.compile(r"^[^@/]+@[^@/]+$")


# ==============================================================================
# Device Domain
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """A partition discovered on a Device."""

    name: str  # e.g., "sda2"
    fstype: Optional[str] = None  # e.g., "ext4", "vfat", None
    size_bytes: int = 0
    mountpoint: Optional[str] = None
    path: Optional[str] = None  # lsblk PATH, e.g. "/dev/mapper/vg-root"

    @property
    def device_path(self) -> str:
        return self.path or f"/dev/{self.name}"

    @property
    def is_ext_family(self) -> bool:
        return (self.fstype or "").lower() in EXT_FAMILY


@dataclass(frozen=True)
class Device:
    """A whole block storage unit.

    Resolved once at pipeline start and never refreshed.
    """

    name: str  # e.g., "sda", "nvme0n1"
    size_bytes: int
    model: Optional[str] = None
    partitions: tuple[Partition, ...] = ()
    path: Optional[str] = None

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/sda)."""
        return self.path or f"/dev/{self.name}"

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """Return e.g. "sda 10.0GB" or "sda Samsung SSD (10.0GB)"."""
        size_str = f"{self.size_gb:.1f}GB"
        if self.model:
            return f"{self.name} {self.model.strip()} ({size_str})"
        return f"{self.name} {size_str}"


@dataclass(frozen=True)
class ImageTarget:
    """What the Imaging Engine actually reads: a partition or the whole device."""

    device: Device
    partition: Optional[Partition] = None

    @property
    def path(self) -> str:
        if self.partition is not None:
            return self.partition.device_path
        return self.device.device_path

    @property
    def fstype(self) -> Optional[str]:
        if self.partition is not None:
            return self.partition.fstype
        return None

    @property
    def size_bytes(self) -> int:
        if self.partition is not None and self.partition.size_bytes:
            return self.partition.size_bytes
        return self.device.size_bytes

    @property
    def is_whole_device(self) -> bool:
        return self.partition is None

    @property
    def is_ext_family(self) -> bool:
        return self.partition is not None and self.partition.is_ext_family


# ==============================================================================
# Formats and Strategy
# ==============================================================================


class ImageFormat(Enum):
    """Requested output format."""

    RAW = "raw"
    QCOW2 = "qcow2"  # QEMU/KVM
    VMDK = "vmdk"  # VMware
    VHD = "vhd"  # Hyper-V / Azure

    @classmethod
    def choices(cls) -> list[str]:
        return [member.value for member in cls]

    @property
    def is_container(self) -> bool:
        return self is not ImageFormat.RAW

    @property
    def qemu_driver(self) -> str:
        """Name qemu-img uses for this format."""
        if self is ImageFormat.VHD:
            return "vpc"
        return self.value

    @property
    def supports_internal_compression(self) -> bool:
        return self in (ImageFormat.QCOW2, ImageFormat.VMDK)

    @property
    def supports_check(self) -> bool:
        return self in (ImageFormat.QCOW2, ImageFormat.VMDK)


class CaptureStrategy(Enum):
    """How the image target is read."""

    SPARSE = "sparse"  # e2image, allocated blocks only
    FULL_COPY = "full_copy"  # dd, every byte


@dataclass(frozen=True)
class CapturePlan:
    """Decisions made once, before capture starts."""

    strategy: CaptureStrategy
    source: str
    output_path: Path
    compress: bool
    checksum: bool
    size_bytes: int = 0


# ==============================================================================
# Artifacts
# ==============================================================================


class ArtifactForm(Enum):
    """Which of the mutually exclusive artifact forms is current."""

    RAW = "raw"
    RAW_COMPRESSED = "raw_compressed"
    CONVERTED = "converted"


@dataclass(frozen=True)
class ImageArtifact:
    """The single current artifact of a run."""

    form: ArtifactForm
    path: Path
    image_format: ImageFormat = ImageFormat.RAW

    @property
    def name(self) -> str:
        return self.path.name

    def exists(self) -> bool:
        return self.path.is_file()

    @classmethod
    def raw(cls, path: Path) -> ImageArtifact:
        return cls(ArtifactForm.RAW, path)

    @classmethod
    def compressed(cls, path: Path) -> ImageArtifact:
        return cls(ArtifactForm.RAW_COMPRESSED, path)

    @classmethod
    def converted(cls, path: Path, image_format: ImageFormat) -> ImageArtifact:
        return cls(ArtifactForm.CONVERTED, path, image_format)


@dataclass(frozen=True)
class ChecksumRecord:
    """SHA-256 digest of the uncompressed raw image."""

    digest: str
    subject: str  # file name the digest describes, e.g. "snapshot.img"

    def to_line(self) -> str:
        """Render in sha256sum format so `sha256sum -c` accepts it."""
        return f"{self.digest}  {self.subject}\n"

    @classmethod
    def from_line(cls, line: str) -> ChecksumRecord:
        parts = line.strip().split(None, 1)
        if len(parts) != 2 or not re.fullmatch(r"[0-9a-fA-F]{64}", parts[0]):
            raise ValueError(f"Not a sha256sum line: {line.strip()!r}")
        subject = parts[1].lstrip("*")
        return cls(digest=parts[0].lower(), subject=Path(subject).name)


class ArtifactPaths:
    """Fixed, deterministic artifact names inside the output directory."""

    IMAGE_NAME = "snapshot.img"
    COMPRESSED_NAME = "snapshot.img.gz"
    CHECKSUM_NAME = "snapshot.img.sha256"
    CONVERTED_STEM = "snapshot"

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    @property
    def raw(self) -> Path:
        return self.output_dir / self.IMAGE_NAME

    @property
    def compressed(self) -> Path:
        return self.output_dir / self.COMPRESSED_NAME

    @property
    def checksum(self) -> Path:
        return self.output_dir / self.CHECKSUM_NAME

    def converted(self, image_format: ImageFormat) -> Path:
        return self.output_dir / f"{self.CONVERTED_STEM}.{image_format.value}"

    def all_paths(self) -> list[Path]:
        paths = [self.raw, self.compressed, self.checksum]
        paths.extend(
            self.converted(fmt) for fmt in ImageFormat if fmt.is_container
        )
        return paths


# ==============================================================================
# Remote
# ==============================================================================


@dataclass(frozen=True)
class RemoteDestination:
    """Where the final artifact is shipped."""

    target: str  # user@host
    path: str = "~"

    @classmethod
    def parse(cls, target: Optional[str], path: Optional[str] = None) -> Optional[
        RemoteDestination
    ]:
        """Return None when no target is configured.

        Raises:
            ValueError: If the target is not shaped like user@host
        """
        if not target:
            return None
        if not REMOTE_TARGET_PATTERN.match(target):
            raise ValueError(target)
        return cls(target=target, path=path or "~")

    def __str__(self) -> str:
        return f"{self.target}:{self.path}"


class RemoteVerification(Enum):
    """Outcome of the remote checksum confirmation."""

    SKIPPED = "skipped"  # no remote, or verification disabled
    NOT_APPLICABLE = "not_applicable"  # no digest describes the shipped file
    VERIFIED = "verified"
    MISMATCH = "mismatch"


# ==============================================================================
# Pipeline State
# ==============================================================================


class FreezeState(Enum):
    UNFROZEN = "unfrozen"
    FROZEN = "frozen"
    THAW_FAILED = "thaw_failed"


class PipelineStage(Enum):
    """Linear stages of an export run."""

    INIT = "init"
    RESOLVE_DEVICE = "resolve_device"
    RESOLVE_TARGET = "resolve_target"
    PREPARE_OUTPUT = "prepare_output"
    FREEZE = "freeze"
    CAPTURE = "capture"
    THAW = "thaw"
    CONVERT = "convert"
    CLEANUP_RAW = "cleanup_raw"
    TRANSFER = "transfer"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ExportResult:
    """Returned by a successful run."""

    artifact: ImageArtifact
    strategy: CaptureStrategy
    checksum: Optional[ChecksumRecord] = None
    remote_verification: RemoteVerification = RemoteVerification.SKIPPED
    elapsed_seconds: float = 0.0
    warnings: tuple[str, ...] = field(default_factory=tuple)
