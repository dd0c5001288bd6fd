"""Tests for capture planning, capture commands and checksums."""

import hashlib
import shutil
import subprocess
from pathlib import Path

import pytest

from do_export.domain import (
    ArtifactForm,
    ArtifactPaths,
    CapturePlan,
    CaptureStrategy,
    ChecksumRecord,
    Device,
    ImageFormat,
    ImageTarget,
    Partition,
)
from do_export.storage.exceptions import CaptureError, CommandError, MissingToolError
from do_export.storage.imaging import capturing
from do_export.storage.imaging import checksum, strategy


def target_with(fstype):
    partition = Partition(name="sdx1", fstype=fstype, size_bytes=1024, path="/dev/sdx1")
    return ImageTarget(device=Device(name="sdx", size_bytes=4096), partition=partition)


class TestSelectStrategy:
    """Tests for select_strategy function."""

    @pytest.mark.parametrize("fstype", ["ext2", "ext3", "ext4", "EXT4"])
    def test_ext_family_is_sparse(self, fstype):
        assert strategy.select_strategy(target_with(fstype)) is CaptureStrategy.SPARSE

    @pytest.mark.parametrize("fstype", ["xfs", "btrfs", "vfat", "ntfs", None])
    def test_other_filesystems_full_copy(self, fstype):
        assert strategy.select_strategy(target_with(fstype)) is CaptureStrategy.FULL_COPY

    def test_whole_device_full_copy(self):
        target = ImageTarget(device=Device(name="sdx", size_bytes=4096))

        assert strategy.select_strategy(target) is CaptureStrategy.FULL_COPY


class TestPlanCapture:
    """Tests for plan_capture function."""

    def test_raw_compressed(self, make_settings, output_dir):
        """Test raw+compress writes the .gz and computes no checksum."""
        settings = make_settings(compress=True, verify=True)

        plan = strategy.plan_capture(target_with("ext4"), settings, ArtifactPaths(output_dir))

        assert plan.compress is True
        assert plan.checksum is False
        assert plan.output_path == output_dir / "snapshot.img.gz"
        assert plan.source == "/dev/sdx1"
        assert plan.size_bytes == 1024

    def test_raw_uncompressed_with_verify(self, make_settings, output_dir):
        settings = make_settings(compress=False, verify=True)

        plan = strategy.plan_capture(target_with("ext4"), settings, ArtifactPaths(output_dir))

        assert plan.compress is False
        assert plan.checksum is True
        assert plan.output_path == output_dir / "snapshot.img"

    @pytest.mark.parametrize("image_format", [ImageFormat.QCOW2, ImageFormat.VMDK, ImageFormat.VHD])
    def test_container_skips_capture_compression(self, make_settings, output_dir, image_format):
        """Test compression is left to the converter for container formats."""
        settings = make_settings(image_format=image_format, compress=True, verify=True)

        plan = strategy.plan_capture(target_with("xfs"), settings, ArtifactPaths(output_dir))

        assert plan.compress is False
        assert plan.checksum is True
        assert plan.strategy is CaptureStrategy.FULL_COPY
        assert plan.output_path == output_dir / "snapshot.img"

    def test_verify_disabled(self, make_settings, output_dir):
        settings = make_settings(compress=False, verify=False)

        plan = strategy.plan_capture(target_with("ext4"), settings, ArtifactPaths(output_dir))

        assert plan.checksum is False


class TestRequiredTools:
    """Tests for required_tools function."""

    def test_sparse_compressed_local(self, make_settings, output_dir):
        settings = make_settings()
        plan = strategy.plan_capture(target_with("ext4"), settings, ArtifactPaths(output_dir))

        tools = [tool for tool, _ in strategy.required_tools(plan, settings)]

        assert tools == ["e2image", "gzip"]

    def test_full_copy_container_remote(self, make_settings, output_dir, remote):
        settings = make_settings(image_format=ImageFormat.QCOW2, remote=remote)
        plan = strategy.plan_capture(target_with(None), settings, ArtifactPaths(output_dir))

        tools = [tool for tool, _ in strategy.required_tools(plan, settings)]

        assert tools == ["dd", "sha256sum", "qemu-img", "rsync", "ssh"]


class TestFindCompressor:
    """Tests for find_compressor function."""

    def test_prefers_pigz(self, mocker):
        mocker.patch.object(strategy.shutil, "which", side_effect=lambda tool: f"/usr/bin/{tool}")

        assert strategy.find_compressor() == "pigz"

    def test_falls_back_to_gzip(self, mocker):
        mocker.patch.object(
            strategy.shutil, "which", side_effect=lambda tool: "/bin/gzip" if tool == "gzip" else None
        )

        assert strategy.find_compressor() == "gzip"

    def test_none_available(self, mocker):
        mocker.patch.object(strategy.shutil, "which", return_value=None)

        assert strategy.find_compressor() is None


def make_plan(tmp_path, strategy_kind, compress):
    name = "snapshot.img.gz" if compress else "snapshot.img"
    return CapturePlan(
        strategy=strategy_kind,
        source="/dev/sdx1",
        output_path=tmp_path / name,
        compress=compress,
        checksum=not compress,
        size_bytes=1024,
    )


class TestBuildCaptureCommand:
    """Tests for build_capture_command function."""

    def test_sparse_to_file(self, tmp_path):
        plan = make_plan(tmp_path, CaptureStrategy.SPARSE, compress=False)

        assert capturing.build_capture_command(plan, to_stdout=False) == [
            "e2image", "-rap", "/dev/sdx1", str(tmp_path / "snapshot.img"),
        ]

    def test_sparse_to_stdout(self, tmp_path):
        plan = make_plan(tmp_path, CaptureStrategy.SPARSE, compress=True)

        assert capturing.build_capture_command(plan, to_stdout=True) == [
            "e2image", "-rap", "/dev/sdx1", "-",
        ]

    def test_full_copy_to_file(self, tmp_path):
        plan = make_plan(tmp_path, CaptureStrategy.FULL_COPY, compress=False)

        assert capturing.build_capture_command(plan, to_stdout=False) == [
            "dd", "if=/dev/sdx1", "bs=4M", "status=progress", f"of={tmp_path / 'snapshot.img'}",
        ]

    def test_full_copy_to_stdout(self, tmp_path):
        plan = make_plan(tmp_path, CaptureStrategy.FULL_COPY, compress=True)

        assert capturing.build_capture_command(plan, to_stdout=True) == [
            "dd", "if=/dev/sdx1", "bs=4M", "status=progress",
        ]

    def test_compress_command(self):
        assert capturing.build_compress_command("pigz") == ["pigz", "-1", "-c"]


class TestCapture:
    """Tests for capture function."""

    def test_uncompressed_sparse(self, mocker, tmp_path):
        """Test e2image writes the raw artifact directly."""
        plan = make_plan(tmp_path, CaptureStrategy.SPARSE, compress=False)

        def fake_run(command, on_line=None, **kwargs):
            Path(command[-1]).write_bytes(b"\0" * 512)
            return []

        run = mocker.patch.object(capturing, "run_with_progress", side_effect=fake_run)
        pipeline = mocker.patch.object(capturing, "run_pipeline")

        artifact = capturing.capture(plan)

        assert run.call_args[0][0][0] == "e2image"
        pipeline.assert_not_called()
        assert artifact.form is ArtifactForm.RAW
        assert artifact.path == tmp_path / "snapshot.img"

    def test_compressed_full_copy(self, mocker, tmp_path):
        """Test dd is piped into the compressor."""
        plan = make_plan(tmp_path, CaptureStrategy.FULL_COPY, compress=True)
        mocker.patch.object(capturing, "find_compressor", return_value="gzip")

        def fake_pipeline(producer, consumer, output_path, on_line=None):
            output_path.write_bytes(b"\x1f\x8b")
            return []

        pipeline = mocker.patch.object(capturing, "run_pipeline", side_effect=fake_pipeline)

        artifact = capturing.capture(plan)

        producer, consumer, output_path = pipeline.call_args[0]
        assert producer[0] == "dd"
        assert consumer == ["gzip", "-1", "-c"]
        assert output_path == tmp_path / "snapshot.img.gz"
        assert artifact.form is ArtifactForm.RAW_COMPRESSED

    def test_no_compressor(self, mocker, tmp_path):
        plan = make_plan(tmp_path, CaptureStrategy.SPARSE, compress=True)
        mocker.patch.object(capturing, "find_compressor", return_value=None)

        with pytest.raises(MissingToolError):
            capturing.capture(plan)

    def test_failure_leaves_partial_output(self, mocker, tmp_path):
        """Test a read error is fatal and the partial file is kept."""
        plan = make_plan(tmp_path, CaptureStrategy.FULL_COPY, compress=False)

        def failing_run(command, on_line=None, **kwargs):
            plan.output_path.write_bytes(b"partial")
            raise CommandError(command, 1, "dd: error reading '/dev/sdx1': Input/output error")

        mocker.patch.object(capturing, "run_with_progress", side_effect=failing_run)

        with pytest.raises(CaptureError, match="Input/output error") as exc_info:
            capturing.capture(plan)

        assert exc_info.value.source == "/dev/sdx1"
        assert plan.output_path.read_bytes() == b"partial"

    def test_missing_output_is_error(self, mocker, tmp_path):
        plan = make_plan(tmp_path, CaptureStrategy.SPARSE, compress=False)
        mocker.patch.object(capturing, "run_with_progress", return_value=[])

        with pytest.raises(CaptureError, match="produced no output"):
            capturing.capture(plan)


class TestChecksum:
    """Tests for checksum helpers."""

    def test_record_format(self):
        record = ChecksumRecord(digest="a" * 64, subject="snapshot.img")

        assert record.to_line() == f"{'a' * 64}  snapshot.img\n"

    def test_compute_uses_basename(self, mocker, tmp_path):
        """Test sha256sum runs inside the output directory on the file name."""
        image = tmp_path / "snapshot.img"
        run = mocker.patch.object(
            checksum, "run_checked_command", return_value=f"{'b' * 64}  snapshot.img\n"
        )

        record = checksum.compute_checksum(image)

        run.assert_called_once_with(["sha256sum", "snapshot.img"], cwd=str(tmp_path))
        assert record == ChecksumRecord(digest="b" * 64, subject="snapshot.img")

    def test_compute_failure(self, mocker, tmp_path):
        mocker.patch.object(
            checksum, "run_checked_command", side_effect=CommandError(["sha256sum"], 1, "No such file")
        )

        with pytest.raises(CaptureError, match="Checksum failed"):
            checksum.compute_checksum(tmp_path / "snapshot.img")

    def test_read_missing_or_malformed(self, tmp_path):
        path = tmp_path / "snapshot.img.sha256"
        assert checksum.read_checksum(path) is None

        path.write_text("not a checksum\n")
        assert checksum.read_checksum(path) is None

    @pytest.mark.skipif(shutil.which("sha256sum") is None, reason="sha256sum not installed")
    def test_round_trip_with_real_sha256sum(self, tmp_path):
        """Test the stored digest matches an independent computation and sha256sum -c."""
        image = tmp_path / "snapshot.img"
        image.write_bytes(b"block data " * 4096)
        checksum_path = tmp_path / "snapshot.img.sha256"

        record = checksum.checksum_image(image, checksum_path)

        assert record.digest == hashlib.sha256(image.read_bytes()).hexdigest()
        assert checksum.read_checksum(checksum_path) == record
        result = subprocess.run(
            ["sha256sum", "-c", checksum_path.name], cwd=tmp_path, capture_output=True, text=True
        )
        assert result.returncode == 0
