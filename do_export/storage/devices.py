"""Block device detection and image target selection using lsblk.

Device Detection:
    Uses lsblk with JSON output to enumerate block devices and their
    properties (name, path, type, size, model, filesystem type, mountpoint,
    removable flag). Enumeration order is the order lsblk prints, which is
    the kernel's order.

Auto-detection:
    The first entry whose TYPE is "disk" is chosen. Partitions, loop
    devices, optical drives ("rom") and memory-backed disks (zram, ram) are
    never selected.

Target Selection:
    The sparse capture strategy only understands ext2/3/4, so the resolver
    looks for the first ext-family volume below the device (partitions and
    any LVM/crypt volumes nested in them). When there is none the whole
    device becomes the image target and a warning is logged; capture then
    falls back to a full copy.

Example:
    >>> device = resolve_device(None)
    >>> target = resolve_image_target(device)
    >>> print(target.path, target.fstype)
    /dev/sda2 ext4
"""
import json
import os
import stat
import subprocess
from pathlib import Path
from typing import Optional

from do_export.domain import Device, ImageTarget, Partition
from do_export.logging import LoggerFactory

from .exceptions import InvalidDeviceError, NoDeviceFoundError

log = LoggerFactory.for_devices()

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,RM,MOUNTPOINT,FSTYPE,PKNAME"
EXCLUDED_DISK_PREFIXES = ("zram", "ram")
WHOLE_DISK_TYPE = "disk"


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def get_block_devices(device_path: Optional[str] = None) -> list[dict]:
    """Return lsblk entries, optionally restricted to one device.

    Returns an empty list when lsblk fails or prints invalid JSON.
    """
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device_path:
        command.append(device_path)
    try:
        result = run_command(command, log_output=False)
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, json.JSONDecodeError) as error:
        log.debug(f"lsblk failed: {error}")
        return []
    devices = data.get("blockdevices", []) or []
    names = [device.get("name") for device in devices if device.get("name")]
    if names:
        log.debug(f"lsblk found {len(names)} devices: {', '.join(names)}")
    else:
        log.debug("lsblk found no block devices")
    return devices


def get_children(device):
    return device.get("children", []) or []


def is_whole_disk(entry: dict) -> bool:
    if entry.get("type") != WHOLE_DISK_TYPE:
        return False
    name = entry.get("name") or ""
    return not name.startswith(EXCLUDED_DISK_PREFIXES)


def _collect_volumes(entry: dict, include_self: bool) -> list[Partition]:
    """Flatten an lsblk tree into volumes in enumeration order."""
    volumes = []
    if include_self:
        volumes.append(_to_partition(entry))
    for child in get_children(entry):
        volumes.extend(_collect_volumes(child, include_self=True))
    return volumes


def _to_partition(entry: dict) -> Partition:
    path = entry.get("path") or f"/dev/{entry.get('name')}"
    fstype = entry.get("fstype") or probe_filesystem_type(path)
    return Partition(
        name=entry["name"],
        fstype=fstype,
        size_bytes=int(entry.get("size") or 0),
        mountpoint=entry.get("mountpoint") or None,
        path=path,
    )


def _to_device(entry: dict) -> Device:
    size_bytes = int(entry.get("size") or 0)
    path = entry.get("path") or f"/dev/{entry.get('name')}"
    if not size_bytes:
        size_bytes = get_device_size(path)
    model = (entry.get("model") or "").strip() or None
    # A filesystem written straight onto the device counts as its first volume
    include_self = bool(entry.get("fstype"))
    return Device(
        name=entry["name"],
        size_bytes=size_bytes,
        model=model,
        partitions=tuple(_collect_volumes(entry, include_self=include_self)),
        path=path,
    )


def probe_filesystem_type(path: str) -> Optional[str]:
    """Ask blkid for the filesystem type when lsblk did not report one."""
    try:
        result = run_command(
            ["blkid", "-o", "value", "-s", "TYPE", path], check=False, log_output=False
        )
    except FileNotFoundError:
        return None
    if result.returncode != 0:
        return None
    fstype = result.stdout.strip()
    return fstype or None


def get_device_size(device_path: str) -> int:
    """Size in bytes from blockdev, or 0 if unknown."""
    try:
        result = run_command(
            ["blockdev", "--getsize64", device_path], check=False, log_output=False
        )
    except FileNotFoundError:
        return 0
    if result.returncode != 0:
        return 0
    try:
        return int(result.stdout.strip())
    except ValueError:
        return 0


def find_primary_disk() -> Device:
    """Pick the first whole disk lsblk reports.

    Raises:
        NoDeviceFoundError: If no whole-disk device exists
    """
    log.info("Auto-detecting primary disk...")
    for entry in get_block_devices():
        if is_whole_disk(entry):
            device = _to_device(entry)
            log.info(f"Detected: {device.device_path} ({device.format_label()})")
            return device
    raise NoDeviceFoundError()


def resolve_device(device: Optional[str]) -> Device:
    """Validate an explicit device or auto-detect one.

    Args:
        device: Device path (e.g., "/dev/sda"), bare name ("sda") or None

    Raises:
        InvalidDeviceError: If an explicit device is not a block device
        NoDeviceFoundError: If auto-detection finds no disk
    """
    if not device:
        return find_primary_disk()

    device_path = device if device.startswith("/") else f"/dev/{device}"
    if not is_block_device(device_path):
        raise InvalidDeviceError(device)

    entries = get_block_devices(device_path)
    if not entries:
        raise InvalidDeviceError(device, "not reported by lsblk")
    resolved = _to_device(entries[0])
    log.info(f"Using device: {resolved.device_path} ({resolved.format_label()})")
    return resolved


def find_ext_partition(device: Device) -> Optional[Partition]:
    """Return the first ext2/3/4 volume on the device, if any."""
    for partition in device.partitions:
        if partition.is_ext_family:
            return partition
    return None


def resolve_image_target(device: Device) -> ImageTarget:
    """Choose what the Imaging Engine reads.

    Degrades to the whole device (with a warning) when no ext-family
    partition exists.
    """
    partition = find_ext_partition(device)
    if partition is not None:
        log.info(f"Found ext partition: {partition.device_path} ({partition.fstype})")
        return ImageTarget(device=device, partition=partition)
    log.warning(
        f"No ext2/3/4 partition found on {device.device_path} - will use a full copy"
    )
    return ImageTarget(device=device)


def backing_source(directory: Path) -> Optional[str]:
    """Return the block device backing a directory according to df."""
    try:
        result = run_command(
            ["df", "--output=source", str(directory)], check=False, log_output=False
        )
    except FileNotFoundError:
        return None
    if result.returncode != 0:
        return None
    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    return lines[-1]


def parent_disk_name(source: str) -> str:
    """Map a partition node to its disk name (/dev/sda2 -> sda)."""
    try:
        result = run_command(
            ["lsblk", "-ndo", "PKNAME", source], check=False, log_output=False
        )
    except FileNotFoundError:
        result = None
    if result is not None and result.returncode == 0:
        parent = result.stdout.strip().splitlines()
        if parent and parent[0].strip():
            return parent[0].strip()
    return os.path.basename(source)


def is_on_device(directory: Path, device: Device) -> bool:
    """True if the directory lives on the device being captured."""
    source = backing_source(directory)
    if not source or not source.startswith("/dev/"):
        return False
    return parent_disk_name(source) == device.name
