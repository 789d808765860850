"""
Conversion queue: admission, scheduling, cancellation and status queries.

One ConversionEngine is created at startup and owns its registry, its worker
tasks and its configuration. All public methods except ``shutdown`` are
synchronous and must be called from the event loop thread.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import NamedTuple, Optional

from convertd.config import EngineConfig
from convertd.encoder import EncodingWorker, is_temp_output, output_path
from convertd.events import ConversionEvent, EventKind, EventPublisher
from convertd.jobs import ConversionJob, JobRegistry, JobStatus
from convertd.library import MediaLibrary

logger = logging.getLogger("convertd.engine")


class AdmissionResult(NamedTuple):
    accepted: bool
    message: str


class ConversionEngine:
    def __init__(self, library: MediaLibrary, config: EngineConfig, events: Optional[EventPublisher] = None):
        self.library = library
        self.config = config
        self.events = events or EventPublisher()
        self.registry = JobRegistry()
        self._workers: dict[asyncio.Task, ConversionJob] = {}
        self._expiry: dict[int, asyncio.TimerHandle] = {}
        self._closed = False

    # ── Admission ─────────────────────────────────────────────────────────────

    def output_path(self, item_id: int) -> Path:
        return output_path(self.config.cache_dir, item_id, self.config.output_extension)

    def has_converted_version(self, item_id: int) -> bool:
        item = self.library.get_item(item_id)
        return bool(item and item.converted_path and Path(item.converted_path).exists())

    def request_conversion(self, item_id: int) -> AdmissionResult:
        if self._closed:
            return AdmissionResult(False, "Conversion engine is shutting down")

        item = self.library.get_item(item_id)
        if item is None:
            return AdmissionResult(False, f"Media {item_id} not found")
        if item.converted_path and Path(item.converted_path).exists():
            return AdmissionResult(False, f"Media {item_id} already converted")
        if self.registry.exists(item_id):
            return AdmissionResult(False, f"Media {item_id} already queued")

        self._cancel_expiry(item_id)
        self.registry.enqueue(item_id, item.file_path, item.file_name, str(self.output_path(item_id)))
        logger.info(f"Queued for conversion: {item.file_name} (media {item_id})")
        self.events.publish(ConversionEvent(EventKind.QUEUED, item_id, file_name=item.file_name))

        self._schedule()
        return AdmissionResult(True, f"Media {item_id} queued for conversion")

    def request_conversion_for_all_incompatible(self) -> int:
        queued = 0
        for item in self.library.list_incompatible_without_converted_output():
            if self.request_conversion(item.id).accepted:
                queued += 1
        logger.info(f"Queued {queued} files for conversion")
        return queued

    # ── Scheduling ────────────────────────────────────────────────────────────

    def _schedule(self) -> None:
        if self._closed or not self.registry.pending_ids():
            return
        # Raises before any job is activated when called off the loop
        loop = asyncio.get_running_loop()
        # Slots are held by worker tasks, so a killed encoder keeps its slot
        # until it has actually exited.
        while len(self._workers) < self.config.max_concurrent:
            item_id = self.registry.pop_pending()
            if item_id is None:
                return
            job = self.registry.activate(item_id)
            if job is None:
                continue
            logger.info(f"Starting conversion of {job.file_name} ({len(self.registry.pending_ids())} still pending)")
            self.events.publish(ConversionEvent(EventKind.STARTED, item_id, file_name=job.file_name, progress=0))
            task = loop.create_task(self._run_worker(job))
            self._workers[task] = job

    async def _run_worker(self, job: ConversionJob) -> None:
        worker = EncodingWorker(self.config, self.library, self.registry, self.events)
        try:
            await worker.run(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while converting {job.file_name}")
            if not job.is_terminal:
                worker.fail(job, f"Unexpected error: {type(e).__name__}: {e}")
        finally:
            self._workers.pop(asyncio.current_task(), None)
            if job.status == JobStatus.COMPLETED and self.registry.get(job.item_id) is job:
                self._expire_later(job)
                self.prune_cache()
            self._schedule()

    def _expire_later(self, job: ConversionJob) -> None:
        self._cancel_expiry(job.item_id)
        loop = asyncio.get_running_loop()
        self._expiry[job.item_id] = loop.call_later(max(0.0, self.config.finished_job_ttl), self._expire, job)

    def _expire(self, job: ConversionJob) -> None:
        self._expiry.pop(job.item_id, None)
        if self.registry.get(job.item_id) is job and job.status == JobStatus.COMPLETED:
            self.registry.remove(job.item_id)

    def _cancel_expiry(self, item_id: int) -> None:
        handle = self._expiry.pop(item_id, None)
        if handle:
            handle.cancel()

    # ── Cancellation ──────────────────────────────────────────────────────────

    def cancel(self, item_id: int) -> bool:
        if self.registry.discard_pending(item_id):
            logger.info(f"Removed media {item_id} from the conversion queue")
            self.events.publish(ConversionEvent(EventKind.CANCELLED, item_id))
            return True

        job = self.registry.get(item_id)
        if job is None or job.status != JobStatus.CONVERTING:
            return False

        job.cancelled = True
        process = job.process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        self.registry.remove(item_id)
        logger.info(f"Cancelled conversion of {job.file_name}")
        self.events.publish(ConversionEvent(EventKind.CANCELLED, item_id, file_name=job.file_name))
        return True

    def dismiss(self, item_id: int) -> bool:
        """Forget a finished job so it no longer shows up in the status."""
        job = self.registry.get(item_id)
        if job is None or not job.is_terminal:
            return False
        self._cancel_expiry(item_id)
        self.registry.remove(item_id)
        return True

    def delete_converted(self, item_id: int) -> bool:
        """Cancel any job for the item and drop its converted output."""
        self.cancel(item_id)
        self.dismiss(item_id)

        item = self.library.get_item(item_id)
        if item is None:
            return False

        deleted = False
        for path in {item.converted_path, str(self.output_path(item_id))}:
            if path and Path(path).exists():
                try:
                    Path(path).unlink()
                    deleted = True
                except OSError as e:
                    logger.warning(f"Could not delete converted file {path}: {e}")
        if item.converted_path:
            self.library.set_converted_path(item_id, None)
            deleted = True
        if deleted:
            logger.info(f"Deleted converted output for media {item_id}")
        return deleted

    # ── Status ────────────────────────────────────────────────────────────────

    def get_status(self) -> dict:
        pending = self.registry.pending_ids()
        return {
            "active": [job.to_dict() for job in self.registry.visible_jobs()],
            "pending_ids": pending,
            "completed_count": self.library.count_converted(),
            "total_in_flight": len(pending) + len(self.registry.active_jobs()),
        }

    def get_item_status(self, item_id: int) -> dict:
        job = self.registry.get(item_id)
        if job is not None:
            status = job.to_dict()
            status["queue_position"] = (
                self.registry.pending_ids().index(item_id) + 1 if job.status == JobStatus.QUEUED else None
            )
            return status

        item = self.library.get_item(item_id)
        if item and item.converted_path and Path(item.converted_path).exists():
            return {"item_id": item_id, "status": "completed", "progress": 100, "output_path": item.converted_path}
        return {"item_id": item_id, "status": "none", "progress": 0}

    def get_cache_stats(self) -> dict:
        total_files = 0
        total_size = 0
        for path in self._cached_outputs():
            try:
                total_size += path.stat().st_size
                total_files += 1
            except OSError:
                continue
        return {
            "file_count": total_files,
            "total_bytes": total_size,
            "total_mb": round(total_size / 1024 / 1024),
        }

    def _cached_outputs(self) -> list[Path]:
        cache_dir = Path(self.config.cache_dir)
        if not cache_dir.is_dir():
            return []
        suffix = f".{self.config.output_extension}"
        return [
            p for p in cache_dir.iterdir()
            if p.is_file() and p.name.endswith(suffix) and not is_temp_output(p.name)
        ]

    # ── Cache maintenance ─────────────────────────────────────────────────────

    def startup(self) -> None:
        Path(self.config.cache_dir).mkdir(parents=True, exist_ok=True)
        self.sweep_orphans()
        self.prune_cache()

    def sweep_orphans(self) -> int:
        """Delete temp files left behind by interrupted conversions."""
        cache_dir = Path(self.config.cache_dir)
        if not cache_dir.is_dir():
            return 0

        live = {job.temp_path for job in self.registry.active_jobs() if job.temp_path}
        cleaned = 0
        freed = 0
        for path in cache_dir.iterdir():
            if not is_temp_output(path.name) or str(path) in live:
                continue
            try:
                size = path.stat().st_size
                path.unlink()
                cleaned += 1
                freed += size
                logger.info(f"Cleaned up orphaned temp file: {path.name}")
            except OSError as e:
                logger.warning(f"Could not clean up {path}: {e}")

        if cleaned > 0:
            logger.info(f"Cleaned up {cleaned} orphaned temp files, freed {freed / (1024**2):.1f} MB")
        return cleaned

    def prune_cache(self) -> int:
        """Evict old outputs per the configured age and size limits."""
        max_bytes = self.config.cache_max_bytes
        max_age = self.config.cache_max_age_days * 86400
        if max_bytes <= 0 and max_age <= 0:
            return 0

        in_use = {job.output_path for job in self.registry.visible_jobs()}
        entries = []
        for path in self._cached_outputs():
            try:
                stat = path.stat()
            except OSError:
                continue
            entries.append((stat.st_mtime, stat.st_size, path))
        entries.sort()

        total = sum(size for _, size, _ in entries)
        now = time.time()
        removed = 0
        for mtime, size, path in entries:
            expired = max_age > 0 and now - mtime > max_age
            oversize = max_bytes > 0 and total > max_bytes
            if not (expired or oversize) or str(path) in in_use:
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not evict {path}: {e}")
                continue
            self.library.clear_converted_path_for(str(path))
            total -= size
            removed += 1
            logger.info(f"Evicted cached conversion {path.name} ({'expired' if expired else 'cache full'})")
        return removed

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def apply_config(self, config: EngineConfig) -> None:
        self.config = config
        self._schedule()

    async def shutdown(self) -> None:
        self._closed = True
        for item_id in self.registry.pending_ids():
            self.cancel(item_id)
        for job in self.registry.active_jobs():
            self.cancel(job.item_id)

        tasks = list(self._workers)
        if tasks:
            logger.info(f"Waiting for {len(tasks)} encoder(s) to stop")
            await asyncio.gather(*tasks, return_exceptions=True)

        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
