"""Custom exceptions for the export pipeline.

This module defines a hierarchy of exceptions so that the orchestrator can
tell precondition problems apart from failures that happen after the device
has been touched, and so that every fatal error carries enough context for a
one-line diagnostic.

Exception Hierarchy:
    ExportError (base)
        ├── PreconditionError
        │   ├── NotRootError
        │   ├── MissingToolError
        │   ├── InvalidFormatError
        │   ├── InvalidRemoteError
        │   └── InvalidSettingError
        ├── ResolutionError
        │   ├── NoDeviceFoundError
        │   └── InvalidDeviceError
        ├── OutputError
        ├── FreezeFailedError
        ├── CaptureError
        ├── ConversionError
        │   └── MissingRawArtifactError
        ├── TransferError
        └── PipelineInterrupted

    CommandError is raised by the command runners and wrapped by each stage
    into its own error type.

Usage:
    from do_export.storage.exceptions import InvalidDeviceError

    if not is_block_device(path):
        raise InvalidDeviceError(path)
"""

from __future__ import annotations

import signal
from typing import Optional, Sequence


class CommandError(RuntimeError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = stderr.strip().splitlines()[-1] if stderr.strip() else "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) with code {returncode}: {message}"
        )


class ExportError(Exception):
    """Base exception for all export pipeline errors."""


class PreconditionError(ExportError):
    """Base exception for problems detected before anything is modified."""


class NotRootError(PreconditionError):
    """The pipeline needs root privileges."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(f"Must run as root (effective uid is {euid})")


class MissingToolError(PreconditionError):
    """A required external command is not installed."""

    def __init__(self, tool: str, purpose: str = ""):
        self.tool = tool
        self.purpose = purpose
        msg = f"Missing required command: {tool}"
        if purpose:
            msg += f" (needed for {purpose})"
        super().__init__(msg)


class InvalidFormatError(PreconditionError):
    """The requested output format is not supported."""

    def __init__(self, value: str, choices: Sequence[str]):
        self.value = value
        self.choices = list(choices)
        super().__init__(
            f"Invalid FORMAT '{value}'. Choose: {', '.join(self.choices)}"
        )


class InvalidRemoteError(PreconditionError):
    """The remote destination is not shaped like user@host."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(
            f"REMOTE_TARGET must be 'user@host', got '{value}'. "
            f"Set REMOTE_PATH separately."
        )


class InvalidSettingError(PreconditionError):
    """A configuration value could not be parsed."""

    def __init__(self, key: str, value: str, reason: str):
        self.key = key
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {key}: '{value}' ({reason})")


class ResolutionError(ExportError):
    """Base exception for device resolution failures."""


class NoDeviceFoundError(ResolutionError):
    """Auto-detection found no whole-disk device."""

    def __init__(self):
        super().__init__("Could not auto-detect a disk device")


class InvalidDeviceError(ResolutionError):
    """An explicitly named device is not a block device."""

    def __init__(self, device: str, reason: str = "not a block device"):
        self.device = device
        self.reason = reason
        super().__init__(f"Specified DEVICE '{device}' is {reason}")


class OutputError(ExportError):
    """The output directory or success marker could not be written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot write {path}: {reason}")


class FreezeFailedError(ExportError):
    """A mount could not be frozen."""

    def __init__(self, mountpoint: str, reason: str):
        self.mountpoint = mountpoint
        self.reason = reason
        super().__init__(f"Failed to freeze {mountpoint}: {reason}")


class CaptureError(ExportError):
    """Reading the image target or writing the artifact failed."""

    def __init__(self, message: str, source: str = None, destination: str = None):
        self.source = source
        self.destination = destination
        super().__init__(message)


class ConversionError(ExportError):
    """Container format conversion failed."""

    def __init__(self, message: str, image_format: Optional[str] = None):
        self.image_format = image_format
        super().__init__(message)


class MissingRawArtifactError(ConversionError):
    """No raw image is available to convert."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Raw image not found: {path}")


class TransferError(ExportError):
    """Shipping the artifact to the remote destination failed."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Transfer to {target} failed: {reason}")


class PipelineInterrupted(ExportError):
    """The run received a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Interrupted by {name}")
