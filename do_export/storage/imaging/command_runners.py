"""Command execution utilities with progress tracking."""

import re
import subprocess
from pathlib import Path

from do_export.logging import LoggerFactory

from ..exceptions import CommandError

log = LoggerFactory.for_imaging()

_LINE_BREAK = re.compile(rb"[\r\n]")
_CHUNK_SIZE = 4096
_TAIL_LINES = 20


def iter_output_lines(stream):
    """Yield decoded lines, treating carriage returns as line breaks.

    dd, qemu-img and rsync redraw their progress line with "\\r", so a plain
    readline() would block until the tool exits.
    """
    buffer = b""
    read = getattr(stream, "read1", stream.read)
    while True:
        chunk = read(_CHUNK_SIZE)
        if not chunk:
            break
        buffer += chunk
        parts = _LINE_BREAK.split(buffer)
        buffer = parts.pop()
        for part in parts:
            text = part.decode("utf-8", errors="replace").strip()
            if text:
                yield text
    text = buffer.decode("utf-8", errors="replace").strip()
    if text:
        yield text


def _drain(stream, on_line, tail):
    for line in iter_output_lines(stream):
        tail.append(line)
        del tail[:-_TAIL_LINES]
        if on_line:
            on_line(line)


def _terminate(processes):
    for process in processes:
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()


def run_checked_command(command, input_text=None, cwd=None):
    """Run a command and raise CommandError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
        cwd=cwd,
    )
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip()
        raise CommandError(command, result.returncode, message)
    return result.stdout


def run_with_progress(command, on_line=None, output_path=None, cwd=None):
    """Run a command and feed each progress line to on_line.

    With output_path the command's stdout is written to that file and its
    stderr carries progress (dd, e2image). Without it stdout and stderr are
    merged and read together (qemu-img -p, rsync --progress).

    Returns the last lines of output.

    Raises:
        CommandError: If the command exits non-zero
    """
    log.debug(f"Running command: {' '.join(command)}")
    tail = []
    output_handle = open(output_path, "wb") if output_path is not None else None
    try:
        if output_handle is not None:
            process = subprocess.Popen(
                command, stdout=output_handle, stderr=subprocess.PIPE, cwd=cwd
            )
            stream = process.stderr
        else:
            process = subprocess.Popen(
                command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, cwd=cwd
            )
            stream = process.stdout
        try:
            _drain(stream, on_line, tail)
            process.wait()
        finally:
            _terminate([process])
    finally:
        if output_handle is not None:
            output_handle.close()

    if process.returncode != 0:
        raise CommandError(command, process.returncode, "\n".join(tail))
    log.debug(f"Command completed: {command[0]}")
    return tail


def run_pipeline(producer, consumer, output_path: Path, on_line=None):
    """Run `producer | consumer > output_path`.

    The producer's stderr is parsed for progress. Both exit codes are
    checked; when both fail, the producer's failure is the one raised.

    Raises:
        CommandError: If either command exits non-zero
    """
    log.debug(f"Running pipeline: {' '.join(producer)} | {' '.join(consumer)}")
    processes = []
    producer_tail = []
    with open(output_path, "wb") as output_handle:
        try:
            producer_proc = subprocess.Popen(
                producer, stdout=subprocess.PIPE, stderr=subprocess.PIPE
            )
            processes.append(producer_proc)
            consumer_proc = subprocess.Popen(
                consumer,
                stdin=producer_proc.stdout,
                stdout=output_handle,
                stderr=subprocess.PIPE,
            )
            processes.append(consumer_proc)
            # The consumer owns the read end; closing ours lets the producer
            # see SIGPIPE if the consumer dies.
            producer_proc.stdout.close()

            _drain(producer_proc.stderr, on_line, producer_tail)
            producer_proc.wait()
            consumer_stderr = consumer_proc.stderr.read().decode(
                "utf-8", errors="replace"
            )
            consumer_proc.wait()
        finally:
            _terminate(processes)

    if producer_proc.returncode != 0:
        raise CommandError(producer, producer_proc.returncode, "\n".join(producer_tail))
    if consumer_proc.returncode != 0:
        raise CommandError(consumer, consumer_proc.returncode, consumer_stderr)
    log.debug(f"Pipeline completed: {producer[0]} | {consumer[0]}")
    return producer_tail
