"""Remote transfer of the final artifact over rsync/ssh.

The artifact (and its checksum file, when one was written) is copied with
rsync over ssh. New host keys are accepted on first use because the export
normally runs unattended at boot. When the shipped file is the one the
checksum describes, the digest is recomputed on the remote host.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from do_export.domain import (
    ArtifactPaths,
    ChecksumRecord,
    ImageArtifact,
    ImageFormat,
    RemoteDestination,
    RemoteVerification,
)
from do_export.logging import LoggerFactory
from do_export.storage.devices import human_size
from do_export.storage.exceptions import CommandError, TransferError
from do_export.storage.imaging import ProgressReporter, read_checksum, run_with_progress

log = LoggerFactory.for_transfer()

SSH_OPTIONS = ["-o", "StrictHostKeyChecking=accept-new"]


def select_artifact(paths: ArtifactPaths, image_format: ImageFormat) -> ImageArtifact | None:
    """Pick the file to ship: converted, else compressed raw, else raw."""
    if image_format.is_container:
        converted = paths.converted(image_format)
        if converted.is_file():
            return ImageArtifact.converted(converted, image_format)
    if paths.compressed.is_file():
        return ImageArtifact.compressed(paths.compressed)
    if paths.raw.is_file():
        return ImageArtifact.raw(paths.raw)
    return None


def remote_shell_path(path: str) -> str:
    """Quote a remote directory for the remote shell, keeping ~ expandable."""
    if path == "~":
        return path
    if path.startswith("~/"):
        rest = path[2:]
        return "~/" + shlex.quote(rest) if rest else "~/"
    return shlex.quote(path)


def ssh_command_string() -> str:
    return " ".join(["ssh"] + SSH_OPTIONS)


def build_rsync_command(source: Path, remote: RemoteDestination) -> list[str]:
    destination = f"{remote.target}:{remote.path.rstrip('/') or '/'}/"
    return ["rsync", "-ah", "--progress", "-e", ssh_command_string(), str(source), destination]


def build_remote_verify_command(remote: RemoteDestination, checksum_name: str) -> list[str]:
    remote_script = (
        f"cd {remote_shell_path(remote.path)} && sha256sum -c {shlex.quote(checksum_name)}"
    )
    return ["ssh"] + SSH_OPTIONS + [remote.target, remote_script]


def send_file(source: Path, remote: RemoteDestination) -> None:
    """rsync one file into the remote directory.

    Raises:
        TransferError: If rsync fails or cannot be started
    """
    log.info(f"Transferring {source.name} ({human_size(source.stat().st_size)}) to {remote}...")
    reporter = ProgressReporter(f"Transfer ({source.name})", source="transfer")
    try:
        run_with_progress(build_rsync_command(source, remote), on_line=reporter)
    except (CommandError, OSError) as error:
        raise TransferError(str(remote), str(error)) from error


def verify_remote(
    remote: RemoteDestination, record: ChecksumRecord, checksum_name: str
) -> RemoteVerification:
    """Recompute the digest remotely; a mismatch is a warning, never fatal."""
    log.info(f"Verifying {record.subject} on {remote.target}...")
    command = build_remote_verify_command(remote, checksum_name)
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, text=True, capture_output=True)
    except OSError as error:
        log.warning(f"Remote verification could not run: {error}")
        return RemoteVerification.MISMATCH
    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        log.warning(
            f"Remote checksum verification failed for {record.subject} - "
            f"artifact kept on both ends: {output}"
        )
        return RemoteVerification.MISMATCH
    log.info("Remote checksum verified")
    return RemoteVerification.VERIFIED


def transfer_artifact(
    paths: ArtifactPaths,
    image_format: ImageFormat,
    remote: RemoteDestination | None,
    verify: bool = True,
) -> RemoteVerification:
    """Ship the final artifact and confirm it remotely.

    Does nothing when no remote destination is configured.

    Raises:
        TransferError: If there is nothing to ship or rsync fails
    """
    if remote is None:
        return RemoteVerification.SKIPPED

    artifact = select_artifact(paths, image_format)
    if artifact is None:
        raise TransferError(str(remote), f"no artifact found in {paths.output_dir}")

    send_file(artifact.path, remote)

    record = read_checksum(paths.checksum)
    if record is not None:
        send_file(paths.checksum, remote)

    if not verify:
        return RemoteVerification.SKIPPED
    if record is None or record.subject != artifact.name:
        log.info(
            f"No checksum describes {artifact.name} - remote verification not applicable"
        )
        return RemoteVerification.NOT_APPLICABLE
    return verify_remote(remote, record, paths.checksum.name)
