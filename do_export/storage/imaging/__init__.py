"""Imaging engine: capture of the image target, compression and checksums.

Planning:
    - plan_capture(): Decide strategy, compression and checksum once
    - required_tools(): External commands a plan needs

Capture:
    - capture(): Run e2image or dd, optionally piped through gzip

Checksums:
    - checksum_image(): Hash the raw image and write the checksum file
    - read_checksum(): Load a checksum file written earlier in the run

Command Execution:
    - run_checked_command(): Run command and check result
    - run_with_progress(): Run with progress parsing
    - run_pipeline(): Run producer | consumer > file
"""

from .capturing import capture
from .checksum import checksum_image, compute_checksum, read_checksum, write_checksum
from .command_runners import run_checked_command, run_pipeline, run_with_progress
from .progress import ProgressReporter, format_eta
from .strategy import find_compressor, plan_capture, required_tools, select_strategy

__all__ = [
    "capture",
    "checksum_image",
    "compute_checksum",
    "find_compressor",
    "format_eta",
    "plan_capture",
    "ProgressReporter",
    "read_checksum",
    "required_tools",
    "run_checked_command",
    "run_pipeline",
    "run_with_progress",
    "select_strategy",
    "write_checksum",
]
