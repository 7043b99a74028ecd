import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..logger import get_logger
from .catalog import ArtifactCatalog, ClearResult
from .errors import (
    ConversionError,
    ConversionServiceError,
    FailedItem,
    InvalidTransition,
    NotFound,
)
from .interfaces import Artifact, ConverterGateway, SourceFile, StorageGateway, TargetFormat, output_name

log = get_logger("service")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JobStatus:
    PENDING = "pending"
    CONVERTING = "converting"
    CONVERTED = "converted"
    FAILED = "failed"


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.CONVERTING},
    JobStatus.CONVERTING: {JobStatus.CONVERTED, JobStatus.FAILED},
    JobStatus.CONVERTED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class ConversionJob:
    id: str
    source: SourceFile
    target_format: TargetFormat
    status: str = JobStatus.PENDING
    error: str | None = None
    artifact: Artifact | None = None
    retry_of: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def _advance(self, status: str) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"job {self.id} cannot move from {self.status} to {status}")
        self.status = status
        self.updated_at = _now()

    def start(self) -> None:
        self._advance(JobStatus.CONVERTING)

    def succeed(self, artifact: Artifact) -> None:
        self._advance(JobStatus.CONVERTED)
        self.artifact = artifact

    def fail(self, message: str) -> None:
        self._advance(JobStatus.FAILED)
        self.error = message

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "source": self.source.name,
            "format": self.target_format.value,
            "status": self.status,
            "error": self.error,
            "convertedFile": self.artifact.name if self.artifact else None,
            "downloadUrl": self.artifact.locator if self.artifact else None,
            "retryOf": self.retry_of,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: list[FailedItem] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + len(self.failed)

    def to_dict(self) -> dict[str, object]:
        return {"succeeded": self.succeeded, "failed": [f.to_dict() for f in self.failed]}


class ConversionService:
    """Core domain service orchestrating conversion jobs.

    This service is framework-agnostic. Every storage and converter call is
    pushed to a worker thread so the event loop never waits on disk or on
    the decoder. Job state lives only here; files live only in storage.
    """

    def __init__(
        self,
        storage: StorageGateway,
        converter: ConverterGateway,
        *,
        workers: int = 4,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._storage = storage
        self._converter = converter
        self._catalog = ArtifactCatalog(storage)
        self._workers = workers
        self._jobs: dict[str, ConversionJob] = {}
        self._ids = itertools.count(1)

    @property
    def catalog(self) -> ArtifactCatalog:
        return self._catalog

    def _new_job(self, source: SourceFile, fmt: TargetFormat, retry_of: str | None = None) -> ConversionJob:
        job = ConversionJob(id=f"job-{next(self._ids)}", source=source, target_format=fmt, retry_of=retry_of)
        self._jobs[job.id] = job
        return job

    async def persist_upload(self, name: str, data: bytes) -> SourceFile:
        return await asyncio.to_thread(self._storage.persist_source, name, data)

    async def convert_one(self, source: SourceFile, target_format: "TargetFormat | str | None") -> Artifact:
        fmt = TargetFormat.parse(target_format)
        job = self._new_job(source, fmt)
        return await self._run(job)

    async def convert_source(self, name: str, target_format: "TargetFormat | str | None") -> Artifact:
        fmt = TargetFormat.parse(target_format)
        source = await asyncio.to_thread(self._storage.source, name)
        return await self.convert_one(source, fmt)

    async def retry(self, job_id: str) -> Artifact:
        failed = self.job(job_id)
        if failed.status != JobStatus.FAILED:
            raise InvalidTransition(f"job {job_id} is {failed.status}; only failed jobs can be retried")
        job = self._new_job(failed.source, failed.target_format, retry_of=failed.id)
        log.info("retrying %s as %s", failed.id, job.id)
        return await self._run(job)

    async def _run(self, job: ConversionJob) -> Artifact:
        job.start()
        out_name = output_name(job.source.name, job.target_format)
        try:
            data = await asyncio.to_thread(self._converter.convert, job.source.path, job.target_format)
        except ConversionError as e:
            job.fail(e.message)
            log.warning("%s: %s -> %s failed: %s", job.id, job.source.name, out_name, e.message)
            raise
        except Exception as e:
            job.fail(str(e))
            log.warning("%s: %s -> %s failed: %s", job.id, job.source.name, out_name, e)
            raise ConversionError(str(e)) from e
        try:
            artifact = await asyncio.to_thread(self._storage.write_artifact, out_name, data)
        except ConversionServiceError as e:
            job.fail(e.message)
            log.error("%s: cannot store %s: %s", job.id, out_name, e.message)
            raise
        job.succeed(artifact)
        # Older outcomes for this source/format point at an overwritten artifact.
        self._forget(
            lambda j: j is not job
            and j.source.name == job.source.name
            and j.target_format is job.target_format
            and j.status in (JobStatus.CONVERTED, JobStatus.FAILED)
        )
        log.info("%s: %s -> %s (%d bytes)", job.id, job.source.name, artifact.name, artifact.size_bytes)
        return artifact

    async def convert_all(self, target_format: "TargetFormat | str | None") -> BatchResult:
        fmt = TargetFormat.coerce(target_format)
        names = await asyncio.to_thread(lambda: list(self._storage.list_inbox()))
        result = BatchResult()
        if not names:
            return result

        queue: asyncio.Queue[int] = asyncio.Queue()
        for i in range(len(names)):
            queue.put_nowait(i)
        done: set[int] = set()
        reasons: dict[int, str] = {}

        async def worker_loop() -> None:
            while True:
                try:
                    i = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    source = await asyncio.to_thread(self._storage.source, names[i])
                    await self.convert_one(source, fmt)
                    done.add(i)
                except ConversionServiceError as e:
                    reasons[i] = e.message
                except Exception as e:
                    reasons[i] = str(e)
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker_loop()) for _ in range(min(self._workers, len(names)))]
        await asyncio.gather(*workers)

        for i, name in enumerate(names):
            if i in done:
                result.succeeded += 1
            else:
                result.failed.append(FailedItem(source=name, reason=reasons.get(i, "not processed")))
        log.info("batch %s: %d converted, %d failed", fmt.value, result.succeeded, len(result.failed))
        return result

    def jobs(self) -> list[ConversionJob]:
        return list(self._jobs.values())

    def job(self, job_id: str) -> ConversionJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise NotFound(f"job '{job_id}' not found") from None

    async def remove_source(self, name: str) -> None:
        await asyncio.to_thread(self._storage.delete_inbox, name)
        self._forget(lambda j: j.source.name == name)

    async def remove_artifact(self, name: str) -> None:
        await asyncio.to_thread(self._storage.delete_outbox, name)
        self._forget(lambda j: j.artifact is not None and j.artifact.name == name)

    async def clear(self) -> ClearResult:
        try:
            return await asyncio.to_thread(self._catalog.clear)
        finally:
            self._jobs.clear()

    def _forget(self, predicate) -> None:
        for job_id in [j.id for j in self._jobs.values() if predicate(j)]:
            del self._jobs[job_id]
