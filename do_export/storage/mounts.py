"""Active mounts backed by a device.

Mount information comes from /proc/mounts. Sources are compared after
resolving symlinks so that /dev/mapper/vg-root and /dev/dm-0 match.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from do_export.domain import Device

PROC_MOUNTS = Path("/proc/mounts")
ROOT_MOUNTPOINT = "/"

# Memory-backed, overlay and pseudo filesystems are never frozen
EXCLUDED_FSTYPES = frozenset(
    {
        "tmpfs",
        "devtmpfs",
        "ramfs",
        "sysfs",
        "proc",
        "cgroup",
        "cgroup2",
        "overlay",
        "squashfs",
    }
)

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class MountEntry:
    source: str
    target: str
    fstype: str


def _unescape(field: str) -> str:
    """Decode the octal escapes /proc/mounts uses for spaces and tabs."""
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def read_mounts(mounts_file: Path = PROC_MOUNTS) -> list[MountEntry]:
    entries = []
    with open(mounts_file, "r", encoding="utf-8") as handle:
        for line in handle:
            parts = line.split()
            if len(parts) < 3:
                continue
            entries.append(
                MountEntry(
                    source=_unescape(parts[0]),
                    target=_unescape(parts[1]),
                    fstype=parts[2],
                )
            )
    return entries


def _canonical(path: str) -> str:
    return os.path.realpath(path) if path.startswith("/dev/") else path


def device_sources(device: Device) -> set[str]:
    """Every node that belongs to the device: the disk and its volumes."""
    nodes = {device.device_path}
    nodes.update(partition.device_path for partition in device.partitions)
    return {_canonical(node) for node in nodes}


def freezable_mounts(device: Device, mounts_file: Path = PROC_MOUNTS) -> list[str]:
    """Return the MountSet of a device in /proc/mounts order.

    Excludes the root filesystem (including any other mount of the same
    source), pseudo filesystems, and repeated mounts of one source. Bind
    mounts share a superblock, so freezing one freezes them all.
    """
    entries = read_mounts(mounts_file)
    sources = device_sources(device)
    seen_sources = {
        _canonical(entry.source) for entry in entries if entry.target == ROOT_MOUNTPOINT
    }
    mountpoints: list[str] = []
    for entry in entries:
        if entry.target == ROOT_MOUNTPOINT:
            continue
        if entry.fstype in EXCLUDED_FSTYPES:
            continue
        source = _canonical(entry.source)
        if source not in sources or source in seen_sources:
            continue
        seen_sources.add(source)
        mountpoints.append(entry.target)
    return mountpoints
