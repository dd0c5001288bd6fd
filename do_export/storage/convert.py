"""Conversion of the raw image into a virtual-disk container.

qemu-img does the work:

    qemu-img convert -p -f raw -O qcow2 -c snapshot.img snapshot.qcow2
    qemu-img convert -p -f raw -O vmdk -c -o subformat=streamOptimized ...
    qemu-img convert -p -f raw -O vpc snapshot.img snapshot.vhd
    qemu-img check -f qcow2 snapshot.qcow2
"""

from __future__ import annotations

from pathlib import Path

from do_export.domain import ArtifactPaths, ImageArtifact, ImageFormat
from do_export.logging import LoggerFactory

from .devices import human_size
from .exceptions import CommandError, ConversionError, MissingRawArtifactError
from .imaging.command_runners import run_checked_command, run_with_progress
from .imaging.progress import ProgressReporter
from .imaging.strategy import CONVERT_TOOL

log = LoggerFactory.for_convert()

VMDK_COMPRESSED_SUBFORMAT = "streamOptimized"


def decompress_raw(paths: ArtifactPaths) -> Path:
    """Expand snapshot.img.gz into snapshot.img, replacing any raw file.

    The compressed file is removed once the raw image is complete.
    """
    log.info(f"Decompressing {paths.compressed.name} for conversion...")
    try:
        run_with_progress(["gzip", "-dc", str(paths.compressed)], output_path=paths.raw)
    except (CommandError, OSError) as error:
        raise ConversionError(f"Could not decompress {paths.compressed}: {error}") from error
    paths.compressed.unlink()
    return paths.raw


def ensure_raw(paths: ArtifactPaths) -> Path:
    """Return the raw image path, decompressing when only the .gz exists.

    Raises:
        MissingRawArtifactError: If no raw image is available afterwards
    """
    if not paths.raw.is_file() and paths.compressed.is_file():
        decompress_raw(paths)
    if not paths.raw.is_file():
        raise MissingRawArtifactError(str(paths.raw))
    return paths.raw


def build_convert_command(
    source: Path, destination: Path, image_format: ImageFormat, compress: bool
) -> list[str]:
    command = [CONVERT_TOOL, "convert", "-p", "-f", "raw", "-O", image_format.qemu_driver]
    if compress and image_format.supports_internal_compression:
        command.append("-c")
        if image_format is ImageFormat.VMDK:
            command.extend(["-o", f"subformat={VMDK_COMPRESSED_SUBFORMAT}"])
    command.extend([str(source), str(destination)])
    return command


def check_image(path: Path, image_format: ImageFormat) -> bool:
    """Run qemu-img check; a failure is reported, never raised."""
    if not image_format.supports_check:
        log.info(f"qemu-img check does not support {image_format.value} - skipping")
        return True
    log.info(f"Checking {path.name}...")
    try:
        run_checked_command([CONVERT_TOOL, "check", "-f", image_format.qemu_driver, str(path)])
    except (CommandError, OSError) as error:
        log.warning(f"qemu-img check reported issues (image kept for inspection): {error}")
        return False
    log.info("qemu-img check passed")
    return True


def convert_image(
    paths: ArtifactPaths, image_format: ImageFormat, compress: bool, verify: bool
) -> ImageArtifact:
    """Convert the raw image into image_format.

    Raises:
        MissingRawArtifactError: If there is no raw image to convert
        ConversionError: If decompression or qemu-img convert fails
    """
    if not image_format.is_container:
        raise ConversionError("Raw output needs no conversion", image_format.value)

    source = ensure_raw(paths)
    destination = paths.converted(image_format)
    command = build_convert_command(source, destination, image_format, compress)
    log.info(f"Converting {source.name} to {image_format.value.upper()}...")
    reporter = ProgressReporter(
        f"Convert ({image_format.value})", source="convert"
    )
    try:
        run_with_progress(command, on_line=reporter)
    except (CommandError, OSError) as error:
        raise ConversionError(
            f"Conversion to {image_format.value} failed: {error}", image_format.value
        ) from error

    if not destination.is_file():
        raise ConversionError(
            f"qemu-img produced no output at {destination}", image_format.value
        )
    log.info(
        f"Converted image: {destination.name} "
        f"({human_size(destination.stat().st_size)})"
    )

    if verify:
        check_image(destination, image_format)
    return ImageArtifact.converted(destination, image_format)


def remove_raw(paths: ArtifactPaths) -> None:
    """Delete the intermediate raw image left behind by conversion."""
    if paths.raw.exists():
        paths.raw.unlink()
        log.info(f"Removed intermediate {paths.raw.name}")
