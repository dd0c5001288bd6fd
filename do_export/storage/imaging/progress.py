"""Progress parsing for dd, e2image, qemu-img and rsync output."""

import re
import time

from do_export.logging import LoggerFactory, ThrottledLogger

from ..devices import human_size

# dd: "1073741824 bytes (1.1 GB, 1.0 GiB) copied, 5 s, 215 MB/s"
_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
# qemu-img -p: "    (45.00/100%)"; rsync: "  1,234,567  45%  10.00MB/s    0:01:23"
_PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(?:/100)?%")
_RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kKMG]i?B)/s")

_RATE_UNITS = {
    "kB": 1000,
    "KB": 1000,
    "KiB": 1024,
    "MB": 1000**2,
    "MiB": 1024**2,
    "GB": 1000**3,
    "GiB": 1024**3,
}


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def parse_bytes(line):
    match = _BYTES_PATTERN.search(line)
    return int(match.group(1)) if match else None


def parse_percent(line):
    match = _PERCENT_PATTERN.search(line)
    return float(match.group(1)) if match else None


def parse_rate(line):
    """Return the transfer rate in bytes per second, if the line has one."""
    match = _RATE_PATTERN.search(line)
    if not match:
        return None
    multiplier = _RATE_UNITS.get(match.group(2), 1)
    return float(match.group(1)) * multiplier


def format_progress(label, bytes_done=None, total_bytes=None, percent=None,
                    rate=None, eta=None):
    parts = [label]
    if bytes_done is not None:
        written = human_size(bytes_done)
        if total_bytes:
            written = f"{written} of {human_size(total_bytes)}"
            percent = (bytes_done / total_bytes) * 100
        parts.append(written)
    if percent is not None:
        parts.append(f"{min(percent, 100.0):.1f}%")
    if rate:
        parts.append(f"{human_size(rate)}/s")
    if eta:
        parts.append(f"ETA {eta}")
    return " ".join(parts)


class ProgressReporter:
    """Turns raw tool output lines into throttled progress log entries.

    Every line is logged at TRACE; a summary is logged at INFO at most once
    per interval.
    """

    def __init__(self, label, total_bytes=0, source="imaging", interval_seconds=10.0):
        self.label = label
        self.total_bytes = total_bytes or 0
        self.log = LoggerFactory.for_progress(source)
        self.throttled = ThrottledLogger(self.log, interval_seconds=interval_seconds)
        self.bytes_done = None
        self.percent = None
        self.rate = None
        self._last_bytes = None
        self._last_time = None

    def __call__(self, line):
        self.update(line)

    def update(self, line):
        line = line.strip()
        if not line:
            return
        self.log.trace(line)
        now = time.time()

        bytes_done = parse_bytes(line)
        percent = parse_percent(line)
        rate = parse_rate(line)
        if bytes_done is not None:
            if rate is None and self._last_bytes is not None and self._last_time:
                elapsed = now - self._last_time
                if elapsed > 0 and bytes_done >= self._last_bytes:
                    rate = (bytes_done - self._last_bytes) / elapsed
            self._last_bytes = bytes_done
            self._last_time = now
            self.bytes_done = bytes_done
        if percent is not None:
            self.percent = percent
        if rate is not None:
            self.rate = rate

        if bytes_done is None and percent is None:
            return
        self.throttled.info(self.label, self.summary())

    def eta(self):
        if not (self.rate and self.total_bytes and self.bytes_done is not None):
            return None
        if self.bytes_done > self.total_bytes:
            return None
        return format_eta((self.total_bytes - self.bytes_done) / self.rate)

    def summary(self):
        return format_progress(
            self.label,
            bytes_done=self.bytes_done,
            total_bytes=self.total_bytes,
            percent=self.percent,
            rate=self.rate,
            eta=self.eta(),
        )
