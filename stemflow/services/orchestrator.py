"""
Separation job orchestration.

Drives one uploaded file from `uploaded` to `processed` or `failed`:

    uploaded -> submitting -> polling -> fetching -> finalizing -> processed
                     |             |           |            |
                     +-------------+-----------+------------+--> failed

Each file is an independent coroutine. All coordination goes through the
database, so files of one batch can run concurrently, and a file left in
`processing` by a crashed worker can be picked up again by `reconcile()`
from the engine task id stored on its ProcessingTask.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stemflow.config import get_settings
from stemflow.db.models import (
    EngineTaskStatus,
    FileStatus,
    ProcessingTask,
    ResultDetail,
    UploadedFile,
)
from stemflow.services.engine_client import (
    EngineClient,
    EngineError,
    FetchFailed,
    PollResult,
    PollTransient,
)
from stemflow.services.file_service import InvalidTransition, file_service
from stemflow.services.result_store import result_store
from stemflow.services.storage import StorageService
from stemflow.services.task_store import task_store
from stemflow.services.usage_limiter import Identity, MissingIdentity, UsageLimiter

logger = logging.getLogger(__name__)

settings = get_settings()

DEFAULT_MODEL = "htdemucs"
SIX_STEM_MODEL = "htdemucs_6s"
SIX_STEM_SOURCES = {"piano", "guitar"}
TWO_STEM_SOURCES = {"bass", "drums", "vocals"}
VOCAL_REMOVER = "vocal_remover"


class JobState(str, enum.Enum):
    """Where a file's job currently is."""

    UPLOADED = "uploaded"
    SUBMITTING = "submitting"
    POLLING = "polling"
    FETCHING = "fetching"
    FINALIZING = "finalizing"
    PROCESSED = "processed"
    FAILED = "failed"


class OrchestrationError(Exception):
    """Base class for orchestration errors."""


class FileNotFound(OrchestrationError):
    """No uploaded file with the requested id."""


class InvalidFileState(OrchestrationError):
    """The file is not in a state this operation can start from."""


class JobFailed(OrchestrationError):
    """The job ended without a usable result."""


class NoOutputs(JobFailed):
    """The engine completed the task but listed no output files."""


class CeilingExceeded(JobFailed):
    """Polling ran out of attempts before the task finished."""


class JobCancelled(JobFailed):
    """The caller cancelled the job while it was polling."""


@dataclass(frozen=True)
class EngineParams:
    """Model and stem configuration sent to the engine."""

    model: str
    stems: str
    sound_source: Optional[str] = None


def derive_engine_params(tool_code: str, sound_source: Optional[str] = None) -> EngineParams:
    """Map a tool and optional sound source to engine parameters."""
    if sound_source in SIX_STEM_SOURCES:
        return EngineParams(model=SIX_STEM_MODEL, stems="6stems", sound_source=sound_source)
    if sound_source in TWO_STEM_SOURCES:
        return EngineParams(model=DEFAULT_MODEL, stems="2stems", sound_source=sound_source)
    if not sound_source and tool_code == VOCAL_REMOVER:
        return EngineParams(model=DEFAULT_MODEL, stems="2stems")
    return EngineParams(model=DEFAULT_MODEL, stems="4stems")


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_processing_time_ms(created_at, completed_at) -> int:
    """Engine-side duration in milliseconds, or 0 if either timestamp is unusable."""
    start = _parse_timestamp(created_at)
    end = _parse_timestamp(completed_at)
    if start is None or end is None:
        return 0
    return max(int((end - start).total_seconds() * 1000), 0)


@dataclass
class CompletionResult:
    """
    Outcome of one file's job.

    A processed job may still be partial: compare `fetched_count` with
    `expected_count`, or look at `missing`, before treating it as complete.
    """

    file_id: int
    state: JobState = JobState.UPLOADED
    engine_task_id: Optional[str] = None
    fetched: list[ResultDetail] = field(default_factory=list)
    expected_count: int = 0
    missing: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.PROCESSED

    @property
    def fetched_count(self) -> int:
        return len(self.fetched)

    @property
    def is_partial(self) -> bool:
        return self.succeeded and self.fetched_count < self.expected_count

    def to_dict(self) -> dict:
        """JSON-serializable summary, used as the worker task result."""
        return {
            "file_id": self.file_id,
            "state": self.state.value,
            "engine_task_id": self.engine_task_id,
            "fetched": [d.result_type for d in self.fetched],
            "expected_count": self.expected_count,
            "missing": list(self.missing),
            "partial": self.is_partial,
            "processing_time_ms": self.processing_time_ms,
            "error_message": self.error_message,
        }


class Orchestrator:
    """Runs separation jobs against the engine and records their progress."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        engine: EngineClient,
        storage: StorageService,
        usage_limiter: Optional[UsageLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        max_consecutive_poll_failures: Optional[int] = None,
        result_mime_type: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.engine = engine
        self.storage = storage
        self.usage_limiter = usage_limiter
        self._sleep = sleep
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.poll_interval_seconds
        )
        self.max_poll_attempts = max_poll_attempts or settings.max_poll_attempts
        self.max_consecutive_poll_failures = (
            max_consecutive_poll_failures
            if max_consecutive_poll_failures is not None
            else settings.max_consecutive_poll_failures
        )
        self.result_mime_type = result_mime_type or settings.result_mime_type

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process(
        self,
        file_id: int,
        tool_code: Optional[str] = None,
        sound_source: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CompletionResult:
        """
        Run a file's job from submission to its terminal status.

        Args:
            file_id: UploadedFile id; must be in `uploaded` status
            tool_code: Tool selection; defaults to the file's tool type
            sound_source: Optional stem hint (piano, guitar, bass, drums, vocals)
            cancel_event: Checked before every poll; when set the job fails

        Returns:
            CompletionResult describing the terminal state. A file whose owner
            has no allotment left once their in-flight files are counted is
            failed right after the claim, without reaching the engine.

        Raises:
            FileNotFound: no such file
            InvalidFileState: the file is not in `uploaded` status. A file that
                is processing or already terminal is never processed again.
        """
        refusal = None
        async with self.session_maker() as db:
            owner = await file_service.get_file(db, file_id)
            if owner is None:
                raise FileNotFound(f"File {file_id} not found")
            claimed = await file_service.claim_for_processing(db, file_id)
            if claimed and self.usage_limiter is not None:
                refusal = await self._usage_refusal(db, owner)
                if refusal:
                    await file_service.update_file_status(
                        db, file_id, FileStatus.FAILED, error_message=refusal
                    )
            await db.commit()

        if not claimed:
            raise InvalidFileState(
                f"File {file_id} is {owner.status.value}; only uploaded files can be processed"
            )

        result = CompletionResult(file_id=file_id)
        if refusal:
            logger.warning(f"File {file_id} not submitted: {refusal}")
            result.error_message = refusal
            self._transition(result, JobState.FAILED)
            return result

        params = derive_engine_params(tool_code or owner.tool_type, sound_source)
        return await self._run(result, owner, cancel_event, params=params)

    async def resume(
        self, file_id: int, cancel_event: Optional[asyncio.Event] = None
    ) -> CompletionResult:
        """
        Continue polling a file whose job was submitted by an earlier run.

        Never resubmits: the engine task id recorded on the file's task is
        polled until it reaches a terminal status.
        """
        async with self.session_maker() as db:
            owner = await file_service.get_file(db, file_id, include_details=True)

        if owner is None:
            raise FileNotFound(f"File {file_id} not found")
        if owner.status != FileStatus.PROCESSING or owner.task is None:
            raise InvalidFileState(
                f"File {file_id} has no in-flight engine task to resume"
            )

        result = CompletionResult(
            file_id=file_id,
            state=JobState.SUBMITTING,
            engine_task_id=owner.task.engine_task_id,
        )
        logger.info(
            f"Resuming file {file_id} from engine task {owner.task.engine_task_id} "
            f"(last status: {owner.task.task_status})"
        )
        return await self._run(result, owner, cancel_event)

    async def process_batch(
        self,
        file_ids: list[int],
        tool_code: Optional[str] = None,
        sound_source: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[CompletionResult]:
        """
        Run the jobs of several files concurrently and wait for all of them.

        Files that cannot be started are logged and left out of the result.
        """

        async def run_one(file_id: int) -> Optional[CompletionResult]:
            try:
                return await self.process(file_id, tool_code, sound_source, cancel_event)
            except OrchestrationError as e:
                logger.warning(f"Skipping file {file_id}: {e}")
                return None

        outcomes = await asyncio.gather(*(run_one(file_id) for file_id in file_ids))
        return [outcome for outcome in outcomes if outcome is not None]

    async def reconcile(self, stale_after: Optional[float] = None) -> list[CompletionResult]:
        """
        Recover files left in `processing` by a crashed or restarted worker.

        Files with an engine task that has not been updated for `stale_after`
        seconds are resumed. Files that never got an engine task are failed,
        since their submission state is unknown.
        """
        if stale_after is None:
            stale_after = settings.stale_processing_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after)

        async with self.session_maker() as db:
            stale = await db.execute(
                select(UploadedFile.id)
                .join(ProcessingTask, ProcessingTask.upload_file_id == UploadedFile.id)
                .where(
                    UploadedFile.status == FileStatus.PROCESSING,
                    ProcessingTask.updated_at < cutoff,
                )
            )
            stale_ids = list(stale.scalars().all())

            orphans = await db.execute(
                select(UploadedFile.id)
                .outerjoin(ProcessingTask, ProcessingTask.upload_file_id == UploadedFile.id)
                .where(
                    UploadedFile.status == FileStatus.PROCESSING,
                    ProcessingTask.id.is_(None),
                    UploadedFile.updated_at < cutoff,
                )
            )
            orphan_ids = list(orphans.scalars().all())

        logger.info(
            f"Reconciliation: {len(stale_ids)} stale task(s), "
            f"{len(orphan_ids)} file(s) without a task"
        )

        results = []
        for file_id in orphan_ids:
            result = CompletionResult(file_id=file_id, state=JobState.SUBMITTING)
            await self._fail(
                result,
                "Processing was interrupted before the job reached the separation engine",
            )
            results.append(result)

        async def resume_one(file_id: int) -> Optional[CompletionResult]:
            try:
                return await self.resume(file_id)
            except OrchestrationError as e:
                logger.warning(f"Cannot resume file {file_id}: {e}")
                return None

        resumed = await asyncio.gather(*(resume_one(file_id) for file_id in stale_ids))
        results.extend(r for r in resumed if r is not None)
        return results

    # =========================================================================
    # State machine
    # =========================================================================

    async def _usage_refusal(self, db: AsyncSession, owner: UploadedFile) -> Optional[str]:
        """
        Limit message if starting this file would overrun the owner's allotment.

        Runs inside the claim transaction. The counter row is locked first, so
        other files of the same owner that are in flight are already visible
        when they are counted.
        """
        identity = Identity.resolve(owner.user_id, owner.fingerprint)
        await self.usage_limiter.check(db, identity, owner.tool_type, lock=True)
        in_flight = await file_service.count_in_flight(
            db, owner.user_id, owner.fingerprint, owner.tool_type, exclude_file_id=owner.id
        )
        usage = await self.usage_limiter.check(db, identity, owner.tool_type, pending=in_flight)
        return None if usage.allowed else usage.message

    def _transition(self, result: CompletionResult, state: JobState):
        task = f" [task {result.engine_task_id}]" if result.engine_task_id else ""
        logger.info(f"File {result.file_id}{task}: {result.state.value} -> {state.value}")
        result.state = state

    async def _run(
        self,
        result: CompletionResult,
        owner: UploadedFile,
        cancel_event: Optional[asyncio.Event],
        params: Optional[EngineParams] = None,
    ) -> CompletionResult:
        """Run the remaining steps; every failure ends as a failed file."""
        try:
            if params is not None:
                await self._submit(result, owner, params)
            polled = await self._poll_until_terminal(result, cancel_event)
            await self._fetch_outputs(result, polled)
            await self._finalize(result, owner)
        except (EngineError, JobFailed) as e:
            logger.error(f"File {result.file_id} failed while {result.state.value}: {e}")
            await self._fail(result, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error processing file {result.file_id}")
            await self._fail(result, f"Unexpected error: {e}")
        return result

    async def _submit(self, result: CompletionResult, owner: UploadedFile, params: EngineParams):
        self._transition(result, JobState.SUBMITTING)
        source = await asyncio.to_thread(self.storage.get, owner.storage_key)

        logger.info(
            f"Submitting file {owner.id} to separation engine: "
            f"model={params.model} stems={params.stems} sound_source={params.sound_source}"
        )
        submitted = await self.engine.submit(
            source,
            owner.original_file_name,
            owner.mime_type,
            params.model,
            params.stems,
            params.sound_source,
        )
        result.engine_task_id = submitted.engine_task_id
        logger.info(
            f"Task submitted for file {owner.id}: {submitted.engine_task_id}, "
            f"status: {submitted.status}"
        )

        async with self.session_maker() as db:
            await task_store.create_task(
                db, owner.id, submitted.engine_task_id, submitted.status, submitted.message
            )
            await db.commit()

        if submitted.status == EngineTaskStatus.FAILED.value:
            raise JobFailed(f"Task failed: {submitted.message or 'Unknown error'}")

    async def _poll_until_terminal(
        self, result: CompletionResult, cancel_event: Optional[asyncio.Event]
    ) -> PollResult:
        self._transition(result, JobState.POLLING)
        task_id = result.engine_task_id
        consecutive_failures = 0

        for attempt in range(1, self.max_poll_attempts + 1):
            await self._sleep(self.poll_interval)
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled("Processing cancelled")

            try:
                polled = await self.engine.poll(task_id)
            except PollTransient as e:
                consecutive_failures += 1
                logger.warning(
                    f"Poll {attempt}/{self.max_poll_attempts} for task {task_id} failed "
                    f"({consecutive_failures} in a row): {e}"
                )
                if (
                    self.max_consecutive_poll_failures
                    and consecutive_failures >= self.max_consecutive_poll_failures
                ):
                    raise PollTransient(
                        f"Separation engine unreachable: {consecutive_failures} "
                        f"consecutive status polls failed",
                        detail=e.detail,
                    ) from e
                continue

            consecutive_failures = 0
            logger.info(
                f"Task {task_id} status: {polled.status}, progress: {polled.progress} "
                f"(poll {attempt}/{self.max_poll_attempts})"
            )
            async with self.session_maker() as db:
                await task_store.update_task(
                    db, result.file_id, polled.status, polled.message, progress=polled.progress
                )
                await db.commit()

            if polled.status == EngineTaskStatus.COMPLETED.value:
                return polled
            if polled.status == EngineTaskStatus.FAILED.value:
                raise JobFailed(f"Task failed: {polled.error or polled.message or 'Unknown error'}")

        raise CeilingExceeded(
            f"Task timeout: no result after {self.max_poll_attempts} status polls"
        )

    async def _fetch_outputs(self, result: CompletionResult, polled: PollResult):
        outputs = polled.output_files
        if not outputs:
            raise NoOutputs("No output files returned from separation engine")

        result.expected_count = len(outputs)
        result.processing_time_ms = compute_processing_time_ms(
            polled.created_at, polled.completed_at
        )

        async with self.session_maker() as db:
            await task_store.set_processing_time(db, result.file_id, result.processing_time_ms)
            existing = {d.result_type: d for d in await result_store.list_results(db, result.file_id)}
            await db.commit()

        self._transition(result, JobState.FETCHING)
        for filename in outputs:
            if filename in existing:
                # Stored by an earlier, interrupted run.
                result.fetched.append(existing[filename])
                continue

            logger.info(f"Downloading {filename} for file {result.file_id}...")
            try:
                data = await self.engine.fetch_output(result.engine_task_id, filename)
            except FetchFailed as e:
                logger.error(f"Skipping output {filename} of file {result.file_id}: {e}")
                result.missing.append(filename)
                async with self.session_maker() as db:
                    await task_store.touch(db, result.file_id)
                    await db.commit()
                continue

            # Touching the task keeps reconcile() from resuming a long download.
            async with self.session_maker() as db:
                detail = await result_store.save_result(
                    db, self.storage, result.file_id, filename, data, self.result_mime_type
                )
                await task_store.touch(db, result.file_id)
                await db.commit()
            result.fetched.append(detail)
            logger.info(f"Saved {filename} for file {result.file_id}, size: {len(data)} bytes")

        if not result.fetched:
            raise JobFailed(
                f"None of the {result.expected_count} output files could be downloaded"
            )
        if result.missing:
            logger.warning(
                f"File {result.file_id} completed with {result.fetched_count} of "
                f"{result.expected_count} outputs; missing: {', '.join(result.missing)}"
            )

    async def _finalize(self, result: CompletionResult, owner: UploadedFile):
        self._transition(result, JobState.FINALIZING)
        async with self.session_maker() as db:
            try:
                await file_service.update_file_status(db, result.file_id, FileStatus.PROCESSED)
            except InvalidTransition:
                current = await file_service.get_file(db, result.file_id)
                if current is None or current.status != FileStatus.PROCESSED:
                    raise
                # Another run of the same engine task finished first and was charged.
                logger.warning(f"File {result.file_id} was already finalized by another run")
                self._transition(result, JobState.PROCESSED)
                return
            await db.commit()
        self._transition(result, JobState.PROCESSED)
        logger.info(f"File {result.file_id} processed successfully")

        if self.usage_limiter is None:
            return
        try:
            identity = Identity.resolve(owner.user_id, owner.fingerprint)
            async with self.session_maker() as db:
                await self.usage_limiter.increment(db, identity, owner.tool_type)
                await db.commit()
        except (MissingIdentity, SQLAlchemyError):
            # The file stays processed; only the quota bookkeeping is lost.
            logger.exception(f"Failed to record usage for file {result.file_id}")

    async def _fail(self, result: CompletionResult, message: str):
        self._transition(result, JobState.FAILED)
        result.error_message = message
        try:
            async with self.session_maker() as db:
                await file_service.update_file_status(
                    db, result.file_id, FileStatus.FAILED, error_message=message
                )
                await db.commit()
        except (InvalidTransition, SQLAlchemyError):
            logger.exception(f"Could not record failure of file {result.file_id}")


def build_orchestrator(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Orchestrator:
    """Create an orchestrator wired to the configured engine, storage and database."""
    from stemflow.db.session import async_session_maker
    from stemflow.services.engine_client import engine_client
    from stemflow.services.storage import storage_service
    from stemflow.services.usage_limiter import usage_limiter

    return Orchestrator(
        session_maker=session_maker or async_session_maker,
        engine=engine_client,
        storage=storage_service,
        usage_limiter=usage_limiter,
    )
