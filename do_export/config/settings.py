"""Settings for an export run.

Values are layered: built-in defaults, then an optional JSON settings file,
then the process environment, then explicit overrides (command-line flags).
Keys everywhere use the environment variable names.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from do_export.domain import ImageFormat, RemoteDestination
from do_export.storage.exceptions import (
    InvalidFormatError,
    InvalidRemoteError,
    InvalidSettingError,
)


SETTINGS_PATH_ENV = "DO_EXPORT_SETTINGS_PATH"
DEFAULT_SETTINGS_PATH = Path("/etc/do-export/settings.json")

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_OUTPUT_DIR = "/tmp/do-export"
DEFAULT_REMOTE_PATH = "~"
DEFAULT_SUCCESS_MARKER = "/tmp/export-ok"

DEFAULT_SETTINGS: dict[str, Any] = {
    "DEVICE": "",
    "OUTPUT_DIR": DEFAULT_OUTPUT_DIR,
    "FORMAT": ImageFormat.RAW.value,
    "COMPRESS": "yes",
    "VERIFY": "yes",
    "REMOTE_TARGET": "",
    "REMOTE_PATH": DEFAULT_REMOTE_PATH,
    "SUCCESS_MARKER": DEFAULT_SUCCESS_MARKER,
    "DO_EXPORT_LOG_DIR": "",
}

_TRUE_VALUES = {"yes", "y", "true", "1", "on"}
_FALSE_VALUES = {"no", "n", "false", "0", "off"}


@dataclass(frozen=True)
class ExportSettings:
    device: Optional[str]
    output_dir: Path
    image_format: ImageFormat
    compress: bool
    verify: bool
    remote: Optional[RemoteDestination]
    success_marker: Path
    log_dir: Optional[Path] = None

    @property
    def compress_at_capture(self) -> bool:
        """Compression is deferred to the container when converting."""
        return self.compress and not self.image_format.is_container


def settings_path(environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    value = environ.get(SETTINGS_PATH_ENV)
    return Path(value) if value else DEFAULT_SETTINGS_PATH


def read_settings_file(path: Path) -> dict[str, Any]:
    """Return the JSON settings file contents, or {} if unusable."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(data, dict):
        return {}
    return {key: value for key, value in data.items() if key in DEFAULT_SETTINGS}


def collect_values(
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
    path: Path | None = None,
) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    values = dict(DEFAULT_SETTINGS)
    values.update(read_settings_file(path or settings_path(environ)))
    for key in DEFAULT_SETTINGS:
        if key in environ:
            values[key] = environ[key]
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    return values


def parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise InvalidSettingError(key, str(value), "expected yes or no")


def parse_format(value: Any) -> ImageFormat:
    text = str(value or "").strip().lower()
    try:
        return ImageFormat(text)
    except ValueError:
        raise InvalidFormatError(str(value), ImageFormat.choices()) from None


def parse_remote(target: Any, path: Any) -> Optional[RemoteDestination]:
    target = str(target or "").strip()
    path = str(path or "").strip() or DEFAULT_REMOTE_PATH
    try:
        return RemoteDestination.parse(target, path)
    except ValueError:
        raise InvalidRemoteError(target) from None


def _marker_path(values: Mapping[str, Any]) -> Path:
    return Path(str(values["SUCCESS_MARKER"] or DEFAULT_SUCCESS_MARKER))


def success_marker_path(
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
    path: Path | None = None,
) -> Path:
    """Resolve only the success marker location, validating nothing else."""
    return _marker_path(collect_values(environ, overrides, path))


def load_settings(
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
    path: Path | None = None,
) -> ExportSettings:
    """Build validated settings.

    Raises:
        InvalidFormatError: FORMAT is not one of raw, qcow2, vmdk, vhd
        InvalidRemoteError: REMOTE_TARGET is set but not user@host
        InvalidSettingError: COMPRESS or VERIFY is not a yes/no value
    """
    values = collect_values(environ, overrides, path)
    device = str(values["DEVICE"] or "").strip() or None
    log_dir = str(values["DO_EXPORT_LOG_DIR"] or "").strip()
    return ExportSettings(
        device=device,
        output_dir=Path(str(values["OUTPUT_DIR"] or DEFAULT_OUTPUT_DIR)),
        image_format=parse_format(values["FORMAT"]),
        compress=parse_bool("COMPRESS", values["COMPRESS"]),
        verify=parse_bool("VERIFY", values["VERIFY"]),
        remote=parse_remote(values["REMOTE_TARGET"], values["REMOTE_PATH"]),
        success_marker=_marker_path(values),
        log_dir=Path(log_dir) if log_dir else None,
    )
