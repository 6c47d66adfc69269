"""
Concurrent, verified artifact acquisition.

Every artifact lands at ``<root>/<artifact.path>``. A file is only ever moved to that
path after its SHA-1 (and size, when known) matched, so a path that exists in the
store is either verified or left over from an older run and re-checked on the
next one. Bytes in flight go to ``<path>.part``; an interrupted transfer resumes
from there with a range request.
"""
import asyncio
import hashlib
import logging
import pathlib
from typing import Callable, Dict, Iterable, List, Optional

import aiofiles
import aiofiles.os

from .errors import Cancelled, DownloadAggregateError, DownloadFailed
from .http import FetchError, Fetcher, fetch_bytes
from .models import Artifact, ArtifactKind, DownloadOutcome, DownloadState, DownloadTask, ProgressEvent

log = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

HASH_CHUNK_SIZE = 64 * 1024
RANGE_NOT_SATISFIABLE = 416


class CancelToken:
    """Set by the caller to stop a run; checked at every I/O step of a transfer."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class IntegrityError(Exception):
    """Downloaded bytes do not match the expected hash or size."""


async def get_file_sha1(file_path: pathlib.Path) -> str:
    """Calculates the SHA1 hash of a file asynchronously."""
    sha1_hash = hashlib.sha1()
    async with aiofiles.open(file_path, 'rb') as f:
        while True:
            chunk = await f.read(HASH_CHUNK_SIZE)
            if not chunk:
                break
            sha1_hash.update(chunk)
    return sha1_hash.hexdigest()


async def file_exists(file_path: pathlib.Path) -> bool:
    return await aiofiles.os.path.isfile(file_path)


class DownloadReport:
    """Outcomes of one orchestrator run, keyed by artifact identity."""

    def __init__(self, outcomes: Dict[str, DownloadOutcome]):
        self.outcomes = outcomes

    def __getitem__(self, identity: str) -> DownloadOutcome:
        return self.outcomes[identity]

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def failed(self) -> List[DownloadOutcome]:
        return [o for o in self.outcomes.values() if not o.ok]

    @property
    def fetched(self) -> List[DownloadOutcome]:
        return [o for o in self.outcomes.values() if o.ok and o.fetched]

    @property
    def cached(self) -> List[DownloadOutcome]:
        return [o for o in self.outcomes.values() if o.ok and not o.fetched]

    @property
    def total_bytes(self) -> int:
        """Declared size of everything fetched in this run."""
        return sum(o.artifact.size or 0 for o in self.fetched)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self, allow_optional: bool = True) -> None:
        """Raises if a mandatory artifact failed, or any artifact when ``allow_optional`` is false."""
        failures = self.failed
        fatal = [o for o in failures if not (allow_optional and o.artifact.optional)]
        if fatal:
            raise DownloadAggregateError([
                DownloadFailed(o.artifact.identity, o.reason or 'unknown error', o.attempts) for o in failures
            ])
        for outcome in failures:
            log.warning(f"Optional artifact {outcome.artifact.identity} unavailable: {outcome.reason}")


class DownloadOrchestrator:

    def __init__(self, fetcher: Fetcher, root: pathlib.Path, max_parallel: int = 16, retries: int = 3,
                 backoff: float = 0.5, progress: Optional[ProgressCallback] = None,
                 cancel: Optional[CancelToken] = None):
        self.fetcher = fetcher
        self.root = pathlib.Path(root)
        self.max_parallel = max_parallel
        self.retries = retries
        self.backoff = backoff
        self.progress = progress
        self.cancel = cancel or CancelToken()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._completed = 0

    def destination(self, artifact: Artifact) -> pathlib.Path:
        return self.root.joinpath(*artifact.path.split('/'))

    async def run(self, artifacts: Iterable[Artifact]) -> DownloadReport:
        """Acquires every artifact and waits for all outcomes.

        Artifacts sharing a destination share a single job. Raises ``Cancelled`` when
        the token was cancelled during the run.
        """
        self._semaphore = asyncio.Semaphore(self.max_parallel)
        self._completed = 0

        jobs_by_dest: Dict[pathlib.Path, asyncio.Future] = {}
        members: Dict[str, tuple] = {}
        for artifact in artifacts:
            if artifact.identity in members:
                continue
            dest = self.destination(artifact)
            job = jobs_by_dest.get(dest)
            if job is None:
                job = asyncio.ensure_future(self._process(DownloadTask(artifact=artifact, destination=dest)))
                jobs_by_dest[dest] = job
            members[artifact.identity] = (artifact, job)

        jobs = list(jobs_by_dest.values())
        log.info(f"Checking {len(jobs)} file(s) with up to {self.max_parallel} parallel download(s)...")
        try:
            results = await asyncio.gather(*jobs, return_exceptions=True)
        except asyncio.CancelledError:
            for job in jobs:
                job.cancel()
            await asyncio.gather(*jobs, return_exceptions=True)
            raise

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Cancelled):
                raise result
        if self.cancel.cancelled or any(isinstance(r, Cancelled) for r in results):
            raise Cancelled(self._completed)

        outcomes = {}
        for identity, (artifact, job) in members.items():
            outcome = job.result()
            if outcome.artifact.identity != identity:
                outcome = outcome.model_copy(update={'artifact': artifact})
            outcomes[identity] = outcome
        report = DownloadReport(outcomes)
        log.info(f"Download check complete: {len(report.fetched)} fetched, {len(report.cached)} cached, "
                 f"{len(report.failed)} failed.")
        return report

    # --- per artifact ---

    def _check_cancel(self) -> None:
        if self.cancel.cancelled:
            raise Cancelled(self._completed)

    def _emit(self, identity: str, done: int, total: Optional[int]) -> None:
        if self.progress is None:
            return
        try:
            self.progress(ProgressEvent(identity=identity, done=done, total=total))
        except Exception:
            log.exception(f"Progress callback failed for {identity}")

    async def _process(self, task: DownloadTask) -> DownloadOutcome:
        artifact = task.artifact
        async with self._semaphore:
            self._check_cancel()
            try:
                valid = await self._is_valid(task)
            except OSError as e:
                task.state = DownloadState.FAILED
                log.error(f"Cannot check {task.destination}: {e}")
                return DownloadOutcome(artifact=artifact, ok=False, reason=str(e) or type(e).__name__)
            if valid:
                task.state = DownloadState.COMPLETED
                self._completed += 1
                self._emit(artifact.identity, artifact.size or 0, artifact.size)
                return DownloadOutcome(artifact=artifact, ok=True)

        attempts = 0
        reason = None
        while attempts <= self.retries:
            attempts += 1
            async with self._semaphore:
                self._check_cancel()
                try:
                    await self._transfer(task)
                except (FetchError, IntegrityError, OSError, asyncio.TimeoutError) as e:
                    reason = str(e) or type(e).__name__
                    task.retries = attempts
                    task.error = reason
                else:
                    task.state = DownloadState.COMPLETED
                    self._completed += 1
                    return DownloadOutcome(artifact=artifact, ok=True, fetched=True, attempts=attempts)

            if attempts <= self.retries:
                delay = self.backoff * (2 ** (attempts - 1))
                log.warning(f"Download of {artifact.identity} failed ({reason}), retrying in {delay:.1f}s "
                            f"({attempts}/{self.retries})")
                await asyncio.sleep(delay)

        task.state = DownloadState.FAILED
        log.error(f"Error downloading {artifact.url}: {reason}")
        return DownloadOutcome(artifact=artifact, ok=False, fetched=True, attempts=attempts, reason=reason)

    async def _is_valid(self, task: DownloadTask) -> bool:
        """True when the destination already holds the expected content."""
        artifact = task.artifact
        dest = task.destination
        if not await file_exists(dest):
            return False

        if artifact.size is not None:
            actual_size = (await aiofiles.os.stat(dest)).st_size
            if actual_size != artifact.size:
                log.warning(f"Size mismatch for existing file {dest.name}. Expected {artifact.size}, "
                            f"got {actual_size}. Redownloading.")
                await aiofiles.os.remove(dest)
                return False

        if artifact.sha1 is None:
            return True

        current_sha1 = await get_file_sha1(dest)
        if current_sha1 != artifact.sha1.lower():
            log.warning(f"SHA1 mismatch for existing file {dest.name}. Expected {artifact.sha1}, "
                        f"got {current_sha1}. Redownloading.")
            await aiofiles.os.remove(dest)
            return False
        return True

    async def _expected_sha1(self, artifact: Artifact) -> Optional[str]:
        if artifact.sha1 is not None:
            return artifact.sha1.lower()
        if artifact.kind is not ArtifactKind.LIBRARY:
            return None
        # Maven repositories publish the digest next to the file.
        try:
            sidecar = (await fetch_bytes(self.fetcher, artifact.url + '.sha1')).decode('ascii', 'replace').split()
        except FetchError:
            sidecar = []
        if sidecar and len(sidecar[0]) == 40:
            return sidecar[0].lower()
        log.warning(f"No checksum known for {artifact.identity}, accepting it unverified.")
        return None

    async def _discard(self, part: pathlib.Path) -> None:
        if await file_exists(part):
            await aiofiles.os.remove(part)

    async def _transfer(self, task: DownloadTask) -> None:
        artifact = task.artifact
        part = task.partial
        await aiofiles.os.makedirs(task.destination.parent, exist_ok=True)
        expected = await self._expected_sha1(artifact)

        hasher = hashlib.sha1()
        offset = 0
        if await file_exists(part):
            offset = (await aiofiles.os.stat(part)).st_size
            if artifact.size is not None and offset > artifact.size:
                await aiofiles.os.remove(part)
                offset = 0
            elif offset:
                async with aiofiles.open(part, 'rb') as f:
                    while True:
                        chunk = await f.read(HASH_CHUNK_SIZE)
                        if not chunk:
                            break
                        hasher.update(chunk)
                log.debug(f"Resuming {artifact.identity} at byte {offset}")

        resumed_from = offset
        done = offset
        try:
            if artifact.size is None or offset < artifact.size:
                try:
                    async with self.fetcher.open(artifact.url, offset) as response:
                        if offset and not response.resumed:
                            hasher = hashlib.sha1()
                            offset = done = 0
                        total = artifact.size if artifact.size is not None else response.total
                        async with aiofiles.open(part, 'ab' if offset else 'wb') as f:
                            async for chunk in response.chunks:
                                self._check_cancel()
                                hasher.update(chunk)
                                await f.write(chunk)
                                done += len(chunk)
                                self._emit(artifact.identity, done, total)
                except FetchError as e:
                    # 416: nothing past the partial file, which may already be complete.
                    if not (resumed_from and e.status == RANGE_NOT_SATISFIABLE and expected is not None):
                        raise
                    log.debug(f"{artifact.identity} has nothing past byte {resumed_from}, checking the partial file")

            if artifact.size is not None and done != artifact.size:
                if done < artifact.size:
                    raise FetchError(artifact.url, message=f"transfer ended at {done} of {artifact.size} bytes")
                raise IntegrityError(f"size mismatch for {artifact.identity}: expected {artifact.size}, got {done}")

            digest = hasher.hexdigest()
            if expected is not None and digest != expected:
                raise IntegrityError(f"SHA1 mismatch for {artifact.identity}: expected {expected}, got {digest}")
        except IntegrityError:
            await self._discard(part)
            raise
        except (FetchError, OSError, asyncio.TimeoutError):
            # A resumed attempt that failed starts over from zero next time.
            if resumed_from:
                await self._discard(part)
            raise

        await aiofiles.os.replace(part, task.destination)
        log.debug(f"Downloaded {artifact.identity} to {task.destination}")
