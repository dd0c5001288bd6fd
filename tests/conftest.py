"""
Pytest configuration and shared fixtures for do-export tests.

This module provides common fixtures and utilities used across all test modules.
"""

import json
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest
from loguru import logger

from do_export.config.settings import ExportSettings
from do_export.domain import Device, ImageFormat, Partition, RemoteDestination


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_ext4_disk() -> Dict[str, Any]:
    """
    Fixture providing a system disk with an EFI partition and an ext4 root.

    Returns:
        Dict representing the disk as returned by lsblk -J -b.
    """
    return {
        "name": "sda",
        "path": "/dev/sda",
        "type": "disk",
        "size": 10737418240,
        "model": "QEMU HARDDISK   ",
        "rm": False,
        "mountpoint": None,
        "fstype": None,
        "pkname": None,
        "children": [
            {
                "name": "sda1",
                "path": "/dev/sda1",
                "type": "part",
                "size": 536870912,
                "model": None,
                "rm": False,
                "mountpoint": "/boot/efi",
                "fstype": "vfat",
                "pkname": "sda",
            },
            {
                "name": "sda2",
                "path": "/dev/sda2",
                "type": "part",
                "size": 10199498752,
                "model": None,
                "rm": False,
                "mountpoint": "/",
                "fstype": "ext4",
                "pkname": "sda",
            },
        ],
    }


@pytest.fixture
def mock_ntfs_disk() -> Dict[str, Any]:
    """Fixture providing a disk with no ext-family filesystem."""
    return {
        "name": "sdb",
        "path": "/dev/sdb",
        "type": "disk",
        "size": 32212254720,
        "model": "Data Disk",
        "rm": False,
        "mountpoint": None,
        "fstype": None,
        "pkname": None,
        "children": [
            {
                "name": "sdb1",
                "path": "/dev/sdb1",
                "type": "part",
                "size": 32211206144,
                "model": None,
                "rm": False,
                "mountpoint": "/data",
                "fstype": "ntfs",
                "pkname": "sdb",
            }
        ],
    }


@pytest.fixture
def mock_virtual_devices() -> List[Dict[str, Any]]:
    """Fixture providing block devices that must never be auto-selected."""
    return [
        {"name": "loop0", "path": "/dev/loop0", "type": "loop", "size": 67108864,
         "model": None, "rm": False, "mountpoint": "/snap/core/1", "fstype": "squashfs"},
        {"name": "sr0", "path": "/dev/sr0", "type": "rom", "size": 1073741312,
         "model": "DVD-ROM", "rm": True, "mountpoint": None, "fstype": None},
        {"name": "zram0", "path": "/dev/zram0", "type": "disk", "size": 4294967296,
         "model": None, "rm": False, "mountpoint": "[SWAP]", "fstype": "swap"},
    ]


@pytest.fixture
def mock_lsblk_output(mock_virtual_devices, mock_ext4_disk, mock_ntfs_disk) -> str:
    """Fixture providing full lsblk JSON output, virtual devices first."""
    return json.dumps(
        {"blockdevices": mock_virtual_devices + [mock_ext4_disk, mock_ntfs_disk]}
    )


@pytest.fixture
def mock_lsblk_empty() -> str:
    return json.dumps({"blockdevices": []})


@pytest.fixture
def ext4_device() -> Device:
    """Fixture providing the resolved form of mock_ext4_disk."""
    return Device(
        name="sda",
        size_bytes=10737418240,
        model="QEMU HARDDISK",
        path="/dev/sda",
        partitions=(
            Partition(name="sda1", fstype="vfat", size_bytes=536870912,
                      mountpoint="/boot/efi", path="/dev/sda1"),
            Partition(name="sda2", fstype="ext4", size_bytes=10199498752,
                      mountpoint="/", path="/dev/sda2"),
        ),
    )


@pytest.fixture
def ntfs_device() -> Device:
    return Device(
        name="sdb",
        size_bytes=32212254720,
        path="/dev/sdb",
        partitions=(
            Partition(name="sdb1", fstype="ntfs", size_bytes=32211206144,
                      mountpoint="/data", path="/dev/sdb1"),
        ),
    )


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    mock_result = Mock()
    mock_result.returncode = 0
    mock_result.stdout = ""
    mock_result.stderr = ""
    return mocker.patch("subprocess.run", return_value=mock_result)


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def mounts_file(tmp_path) -> Path:
    """
    Fixture providing a /proc/mounts replacement.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a mounts file listing sda root, sda1, a bind mount, and
        pseudo filesystems.
    """
    path = tmp_path / "mounts"
    path.write_text(
        "sysfs /sys sysfs rw,nosuid,nodev,noexec,relatime 0 0\n"
        "proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n"
        "/dev/sda2 / ext4 rw,relatime 0 0\n"
        "tmpfs /run tmpfs rw,nosuid,nodev 0 0\n"
        "/dev/sda1 /boot/efi vfat rw,relatime 0 0\n"
        "/dev/sdb1 /data ntfs rw,relatime 0 0\n"
        "/dev/sdb1 /srv/data\\040share ntfs rw,relatime 0 0\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def output_dir(tmp_path) -> Path:
    path = tmp_path / "do-export"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(tmp_path, output_dir):
    """
    Fixture providing a factory for ExportSettings rooted in tmp_path.

    Returns:
        Callable accepting ExportSettings fields as keyword overrides.
    """

    def factory(**overrides) -> ExportSettings:
        values = {
            "device": None,
            "output_dir": output_dir,
            "image_format": ImageFormat.RAW,
            "compress": True,
            "verify": True,
            "remote": None,
            "success_marker": tmp_path / "export-ok",
            "log_dir": None,
        }
        values.update(overrides)
        return ExportSettings(**values)

    return factory


@pytest.fixture
def remote() -> RemoteDestination:
    return RemoteDestination(target="backup@nas", path="/srv/images")


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_messages():
    """
    Fixture capturing loguru records as (level, message) tuples.

    Returns:
        List filled while the test runs.
    """
    records: List[tuple] = []

    def sink(message):
        record = message.record
        records.append((record["level"].name, record["message"]))

    handler_id = logger.add(sink, level="TRACE", enqueue=False)
    yield records
    logger.remove(handler_id)
