"""
Runs ffmpeg for a single conversion job.

The video stream is copied untouched and the first audio stream is re-encoded
to a browser friendly codec. Output goes to a per-attempt temp file in the
cache directory and is renamed over the final path only once ffmpeg exits
cleanly, so the final path never holds a partial file.
"""

import asyncio
import codecs
import itertools
import logging
import os
import re
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Optional

from convertd.config import EngineConfig
from convertd.events import ConversionEvent, EventKind, EventPublisher
from convertd.jobs import ConversionJob, JobRegistry, JobStatus
from convertd.library import MediaLibrary

logger = logging.getLogger("convertd.encoder")

DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_PATTERN = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TEMP_NAME_PATTERN = re.compile(r"^\d+\.[0-9a-f]+\.partial\.\w+$")

STDERR_TAIL_LINES = 12

_attempts = itertools.count(1)


def output_path(cache_dir: Path, item_id: int, ext: str = "mp4") -> Path:
    return Path(cache_dir) / f"{item_id}.{ext}"


def temp_output_path(cache_dir: Path, item_id: int, ext: str = "mp4") -> Path:
    # Unique per attempt so a stale attempt can never clobber a fresh one
    token = f"{time.time_ns():x}{next(_attempts):x}"
    return Path(cache_dir) / f"{item_id}.{token}.partial.{ext}"


def is_temp_output(name: str) -> bool:
    return bool(TEMP_NAME_PATTERN.match(name))


def _seconds(match: re.Match) -> float:
    return int(match.group(1)) * 3600 + int(match.group(2)) * 60 + float(match.group(3))


class ProgressParser:
    """Turns ffmpeg stderr lines into a 0-99 percentage.

    100 is never reported here; it is set only once the output has been
    moved into place.
    """

    def __init__(self, duration: float = 0.0):
        self.duration = duration if duration and duration > 0 else 0.0
        self.progress = 0

    def feed(self, line: str) -> Optional[int]:
        """Return the new percentage if this line changed it, else None."""
        if self.duration <= 0:
            match = DURATION_PATTERN.search(line)
            if match:
                self.duration = _seconds(match)

        match = TIME_PATTERN.search(line)
        if not match or self.duration <= 0:
            return None

        percent = max(0, min(99, round(_seconds(match) / self.duration * 100)))
        if percent == self.progress:
            return None
        self.progress = percent
        return percent


class StderrLines:
    """Splits raw stderr chunks into lines.

    ffmpeg terminates progress lines with a bare \\r, so it counts as a line
    break too. Multi-byte characters split across chunks are reassembled.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n").replace("\r", "\n")
        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> list[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [rest] if rest.strip() else []


def build_command(config: EngineConfig, source: Path, output: Path) -> list[str]:
    return [
        *config.ffmpeg,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-i", str(source),
        "-map", "0:v:0",
        "-map", "0:a:0",
        "-c:v", "copy",
        "-c:a", config.audio_codec,
        "-ac", str(config.audio_channels),
        "-b:a", config.audio_bitrate,
        "-movflags", "+faststart",
        "-f", "mp4",
        str(output),
    ]


class EncodingWorker:
    def __init__(self, config: EngineConfig, library: MediaLibrary, registry: JobRegistry, events: EventPublisher):
        self.config = config
        self.library = library
        self.registry = registry
        self.events = events

    async def run(self, job: ConversionJob) -> None:
        """Drive one job to exactly one terminal outcome."""
        if job.cancelled:
            return
        source = Path(job.source_path)
        if not source.exists():
            self.fail(job, f"Source file not found: {source}")
            return

        item = self.library.get_item(job.item_id)
        duration = item.duration_seconds if item else 0.0

        cache_dir = Path(self.config.cache_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)
        temp_path = temp_output_path(cache_dir, job.item_id, self.config.output_extension)
        job.temp_path = str(temp_path)

        cmd = build_command(self.config, source, temp_path)
        logger.info(f"Converting: {job.file_name}")
        logger.info(f"   Input: {source}")
        logger.info(f"   Output: {temp_path}")
        logger.debug(f"Command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._discard(temp_path)
            self.fail(job, f"Could not start encoder: {type(e).__name__}: {e}")
            return

        job.process = process
        if job.cancelled:
            # Cancelled while the process was being spawned
            _kill(process)

        parser = ProgressParser(duration)
        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        timeout = self._watchdog_timeout(duration)
        timed_out = False

        try:
            await asyncio.wait_for(self._pump(job, process, parser, tail), timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Encoder exceeded {timeout:.0f}s for {job.file_name}, killing it")
            _kill(process)
            await process.wait()
        except asyncio.CancelledError:
            _kill(process)
            await process.wait()
            self._discard(temp_path)
            job.process = None
            raise
        finally:
            if process.returncode is not None:
                job.process = None

        logger.info(f"Encoder exited with code {process.returncode} for {job.file_name}")

        if job.cancelled:
            self._discard(temp_path)
            logger.info(f"Discarded cancelled conversion: {job.file_name}")
            return

        if timed_out:
            self._discard(temp_path)
            self.fail(job, f"Encoder timed out after {timeout:.0f}s")
            return

        if process.returncode != 0:
            self._discard(temp_path)
            details = " | ".join(tail) if tail else "no output"
            self.fail(job, f"Encoder exited with code {process.returncode}: {details}")
            return

        if not temp_path.exists() or temp_path.stat().st_size == 0:
            self._discard(temp_path)
            self.fail(job, "Encoder exited cleanly but produced no output file")
            return

        self._finalize(job, temp_path, Path(job.output_path), item.converted_path if item else None)

    async def _pump(self, job: ConversionJob, process, parser: ProgressParser, tail: deque) -> None:
        lines = StderrLines()
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                for line in lines.flush():
                    self._handle_line(job, line, parser, tail)
                break
            for line in lines.feed(chunk):
                self._handle_line(job, line, parser, tail)

        await process.wait()

    def _handle_line(self, job: ConversionJob, line: str, parser: ProgressParser, tail: deque) -> None:
        tail.append(line.strip())
        percent = parser.feed(line)
        if percent is None or job.cancelled:
            return
        if self._update(job, progress=percent):
            self.events.publish(ConversionEvent(EventKind.PROGRESS, job.item_id, file_name=job.file_name, progress=percent))

    def _finalize(self, job: ConversionJob, temp_path: Path, final_path: Path, previous: Optional[str]) -> None:
        try:
            # Atomic on the same filesystem and replaces any previous output
            os.replace(temp_path, final_path)
        except OSError as e:
            self._discard(temp_path)
            self.fail(job, f"Encoded but could not be saved: {e}")
            return

        try:
            self.library.set_converted_path(job.item_id, str(final_path))
        except Exception as e:
            logger.exception(f"Could not record converted path for media {job.item_id}")
            # Unrecorded output must not outlive the failed job
            if previous != str(final_path):
                self._discard(final_path)
            self.fail(job, f"Encoded but could not be saved: {type(e).__name__}: {e}")
            return

        self._update(job, status=JobStatus.COMPLETED, progress=100, finished_at=datetime.now())
        logger.info(f"Converted: {job.file_name}")
        self.events.publish(ConversionEvent(EventKind.COMPLETED, job.item_id, file_name=job.file_name, progress=100))

    def fail(self, job: ConversionJob, message: str) -> None:
        logger.error(f"Conversion failed for {job.file_name}: {message}")
        if not self._update(job, status=JobStatus.FAILED, error=message, finished_at=datetime.now()):
            return
        self.events.publish(ConversionEvent(EventKind.FAILED, job.item_id, file_name=job.file_name, error=message))

    def _update(self, job: ConversionJob, **fields) -> bool:
        # A cancelled or superseded job is no longer ours to touch
        if self.registry.get(job.item_id) is not job:
            return False
        self.registry.update(job.item_id, **fields)
        return True

    def _watchdog_timeout(self, duration: float) -> Optional[float]:
        if self.config.watchdog_multiplier <= 0:
            return None
        return max(self.config.watchdog_min_seconds, duration * self.config.watchdog_multiplier)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temp file {path}: {e}")


def _kill(process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
