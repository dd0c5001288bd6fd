"""SHA-256 checksum of the raw image, stored in sha256sum format."""

from __future__ import annotations

from pathlib import Path

from do_export.domain import ChecksumRecord
from do_export.logging import LoggerFactory

from ..exceptions import CaptureError, CommandError
from .command_runners import run_checked_command

log = LoggerFactory.for_imaging()


def compute_checksum(image_path: Path) -> ChecksumRecord:
    """Hash the image with sha256sum, run from the image's directory.

    Running on the basename keeps the recorded subject relative, so the
    checksum file verifies wherever both files land together.

    Raises:
        CaptureError: If sha256sum fails or prints something unexpected
    """
    image_path = Path(image_path)
    log.info(f"Computing SHA-256 of {image_path.name}...")
    try:
        output = run_checked_command(
            ["sha256sum", image_path.name], cwd=str(image_path.parent)
        )
        record = ChecksumRecord.from_line(output.splitlines()[0] if output else "")
    except (CommandError, OSError, ValueError) as error:
        raise CaptureError(
            f"Checksum failed: {error}", source=str(image_path)
        ) from error
    log.info(f"SHA-256: {record.digest}")
    return record


def write_checksum(record: ChecksumRecord, checksum_path: Path) -> Path:
    checksum_path = Path(checksum_path)
    try:
        checksum_path.write_text(record.to_line(), encoding="utf-8")
    except OSError as error:
        raise CaptureError(
            f"Could not write checksum file: {error}",
            destination=str(checksum_path),
        ) from error
    log.debug(f"Checksum written to {checksum_path}")
    return checksum_path


def read_checksum(checksum_path: Path) -> ChecksumRecord | None:
    """Load a checksum file; None if it is missing or malformed."""
    checksum_path = Path(checksum_path)
    if not checksum_path.is_file():
        return None
    try:
        line = checksum_path.read_text(encoding="utf-8").strip().splitlines()[0]
        return ChecksumRecord.from_line(line)
    except (OSError, IndexError, ValueError) as error:
        log.warning(f"Ignoring unreadable checksum file {checksum_path}: {error}")
        return None


def checksum_image(image_path: Path, checksum_path: Path) -> ChecksumRecord:
    record = compute_checksum(image_path)
    write_checksum(record, checksum_path)
    return record
