"""Tests for remote transfer and verification."""

import subprocess

import pytest

from do_export.domain import (
    ArtifactForm,
    ArtifactPaths,
    ChecksumRecord,
    ImageFormat,
    RemoteDestination,
    RemoteVerification,
)
from do_export.services import transfer
from do_export.storage.exceptions import CommandError, TransferError


@pytest.fixture
def paths(output_dir):
    return ArtifactPaths(output_dir)


@pytest.fixture
def mock_rsync(mocker):
    return mocker.patch.object(transfer, "run_with_progress", return_value=[])


@pytest.fixture
def mock_ssh(mocker):
    return mocker.patch.object(
        transfer.subprocess,
        "run",
        return_value=subprocess.CompletedProcess(["ssh"], 0, "snapshot.img: OK\n", ""),
    )


def write_checksum(paths, subject="snapshot.img"):
    paths.checksum.write_text(ChecksumRecord("c" * 64, subject).to_line())


class TestSelectArtifact:
    """Tests for select_artifact function."""

    def test_prefers_converted(self, paths):
        paths.raw.write_bytes(b"raw")
        paths.converted(ImageFormat.QCOW2).write_bytes(b"qcow")

        artifact = transfer.select_artifact(paths, ImageFormat.QCOW2)

        assert artifact.form is ArtifactForm.CONVERTED

    def test_compressed_before_raw(self, paths):
        paths.raw.write_bytes(b"raw")
        paths.compressed.write_bytes(b"gz")

        assert transfer.select_artifact(paths, ImageFormat.RAW).path == paths.compressed

    def test_raw_last(self, paths):
        paths.raw.write_bytes(b"raw")

        assert transfer.select_artifact(paths, ImageFormat.RAW).form is ArtifactForm.RAW

    def test_nothing(self, paths):
        assert transfer.select_artifact(paths, ImageFormat.VMDK) is None


class TestCommands:
    """Tests for command construction."""

    def test_rsync_command(self, paths, remote):
        command = transfer.build_rsync_command(paths.raw, remote)

        assert command == [
            "rsync", "-ah", "--progress",
            "-e", "ssh -o StrictHostKeyChecking=accept-new",
            str(paths.raw), "backup@nas:/srv/images/",
        ]

    def test_rsync_home_directory(self, paths):
        command = transfer.build_rsync_command(paths.raw, RemoteDestination("me@host"))

        assert command[-1] == "me@host:~/"

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("~", "~"),
            ("~/", "~/"),
            ("~/images", "~/images"),
            ("~/my images", "~/'my images'"),
            ("/srv/images", "/srv/images"),
            ("/srv/$(rm -rf)", "'/srv/$(rm -rf)'"),
        ],
    )
    def test_remote_shell_path(self, path, expected):
        """Test paths are quoted but a leading ~ stays expandable."""
        assert transfer.remote_shell_path(path) == expected

    def test_remote_verify_command(self, remote):
        command = transfer.build_remote_verify_command(remote, "snapshot.img.sha256")

        assert command == [
            "ssh", "-o", "StrictHostKeyChecking=accept-new", "backup@nas",
            "cd /srv/images && sha256sum -c snapshot.img.sha256",
        ]


class TestTransferArtifact:
    """Tests for transfer_artifact function."""

    def test_no_remote_is_noop(self, paths, mock_rsync, mock_ssh):
        result = transfer.transfer_artifact(paths, ImageFormat.RAW, None)

        assert result is RemoteVerification.SKIPPED
        mock_rsync.assert_not_called()
        mock_ssh.assert_not_called()

    def test_raw_with_checksum_verified(self, paths, remote, mock_rsync, mock_ssh):
        """Test the image and checksum are shipped and checked remotely."""
        paths.raw.write_bytes(b"raw")
        write_checksum(paths)

        result = transfer.transfer_artifact(paths, ImageFormat.RAW, remote)

        assert result is RemoteVerification.VERIFIED
        shipped = [c[0][0][-2] for c in mock_rsync.call_args_list]
        assert shipped == [str(paths.raw), str(paths.checksum)]
        assert mock_ssh.call_args[0][0][-1] == "cd /srv/images && sha256sum -c snapshot.img.sha256"

    def test_remote_mismatch_is_warning(self, paths, remote, mock_rsync, mock_ssh, log_messages):
        paths.raw.write_bytes(b"raw")
        write_checksum(paths)
        mock_ssh.return_value = subprocess.CompletedProcess(
            ["ssh"], 1, "snapshot.img: FAILED\n", "sha256sum: WARNING: 1 computed checksum did NOT match"
        )

        result = transfer.transfer_artifact(paths, ImageFormat.RAW, remote)

        assert result is RemoteVerification.MISMATCH
        assert any(level == "WARNING" and "FAILED" in msg for level, msg in log_messages)

    def test_converted_not_applicable(self, paths, remote, mock_rsync, mock_ssh):
        """Test the raw-image digest is shipped but not checked against a container."""
        paths.converted(ImageFormat.QCOW2).write_bytes(b"qcow")
        write_checksum(paths)

        result = transfer.transfer_artifact(paths, ImageFormat.QCOW2, remote)

        assert result is RemoteVerification.NOT_APPLICABLE
        assert mock_rsync.call_count == 2
        mock_ssh.assert_not_called()

    def test_compressed_without_checksum(self, paths, remote, mock_rsync, mock_ssh):
        paths.compressed.write_bytes(b"gz")

        result = transfer.transfer_artifact(paths, ImageFormat.RAW, remote)

        assert result is RemoteVerification.NOT_APPLICABLE
        assert mock_rsync.call_count == 1

    def test_verify_disabled(self, paths, remote, mock_rsync, mock_ssh):
        paths.raw.write_bytes(b"raw")
        write_checksum(paths)

        result = transfer.transfer_artifact(paths, ImageFormat.RAW, remote, verify=False)

        assert result is RemoteVerification.SKIPPED
        mock_ssh.assert_not_called()

    def test_rsync_failure_is_fatal(self, paths, remote, mocker):
        """Test an unreachable host raises TransferError."""
        paths.raw.write_bytes(b"raw")
        mocker.patch.object(
            transfer,
            "run_with_progress",
            side_effect=CommandError(["rsync"], 255, "ssh: connect to host nas port 22: No route to host"),
        )

        with pytest.raises(TransferError, match="No route to host") as exc_info:
            transfer.transfer_artifact(paths, ImageFormat.RAW, remote)

        assert exc_info.value.target == "backup@nas:/srv/images"
        assert paths.raw.exists()

    def test_nothing_to_ship(self, paths, remote, mock_rsync):
        with pytest.raises(TransferError, match="no artifact"):
            transfer.transfer_artifact(paths, ImageFormat.RAW, remote)
