"""Fetches the blobs a peer references that are not cached yet."""

import asyncio
import tempfile
import uuid
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import timedelta
from typing import BinaryIO, Optional, Union

from blobsync.connection.resilience import ConnectionMonitor
from blobsync.content_store.models import ContentEntry
from blobsync.content_store.store import ContentStore
from blobsync.core.config import SettingsProvider
from blobsync.core.errors import (
    CorruptTransferError,
    IoFailureError,
    NotFoundError,
    TransientNetworkError,
)
from blobsync.core.hashing import fast_digest, normalize_hash
from blobsync.core.logging import get_logger, get_run_logger
from blobsync.core.notifications import Notification, NotificationBus, NotificationType
from blobsync.core.timestamps import utcnow
from blobsync.ledger.ledger import UsageLedger
from blobsync.transfer.models import (
    BlobFetcher,
    FetchOutcome,
    FetchState,
    FetchTask,
    WantedBlob,
)
from blobsync.transfer.throttle import TokenBucket

logger = get_logger("blobsync.transfer")

# Downloads larger than this spill from memory to a file under the store's tmp dir
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024

Wanted = Union[str, WantedBlob]

_END_OF_STREAM = object()


@dataclass
class _SharedFetch:
    task: "asyncio.Task[FetchOutcome]"
    waiters: int = 0
    abandoned: bool = False


class TransferOrchestrator:
    """Turns a list of wanted hashes into completed cache entries.

    Hashes already in the store are reported immediately. The rest are
    downloaded through a worker pool bounded by ``max_concurrent_fetches``
    and shared by every concurrent run, so the same hash is never
    downloaded twice at once. Downloads pause while the connection is
    down, are retried with backoff on transient failures and are throttled
    to the configured aggregate throughput.
    """

    def __init__(
        self,
        store: ContentStore,
        fetcher: BlobFetcher,
        settings: SettingsProvider,
        connection: Optional[ConnectionMonitor] = None,
        ledger: Optional[UsageLedger] = None,
        bus: Optional[NotificationBus] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.connection = connection
        self.bus = bus or NotificationBus()
        self._fetcher = fetcher
        self._settings = settings
        self.max_concurrent = settings().max_concurrent_fetches
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._throttle = TokenBucket(lambda: self._settings().throughput_cap_bytes)
        self._inflight: dict[str, _SharedFetch] = {}
        self._tasks: dict[str, FetchTask] = {}

    def active_tasks(self) -> list[FetchTask]:
        """Snapshot of hashes currently pending or downloading."""
        return list(self._tasks.values())

    async def fetch_many(
        self, wanted: Iterable[Wanted], peer_id: Optional[str] = None
    ) -> list[FetchOutcome]:
        """Run ``fetch_all`` to completion and collect every outcome."""
        return [outcome async for outcome in self.fetch_all(wanted, peer_id=peer_id)]

    async def fetch_all(
        self, wanted: Iterable[Wanted], peer_id: Optional[str] = None
    ) -> AsyncIterator[FetchOutcome]:
        """Ensure every wanted hash ends up in the store.

        Yields exactly one outcome per distinct hash: first the hashes that
        were already cached, then the downloads in completion order.

        Args:
            wanted: Hashes, or ``WantedBlob`` records carrying an announced size
            peer_id: Peer that referenced the hashes, recorded in the usage ledger
        """
        run_log = get_run_logger(uuid.uuid4().hex[:12])
        blobs, invalid = _coerce_wanted(wanted)

        cached: list[WantedBlob] = []
        missing: list[WantedBlob] = []
        for blob in blobs:
            # touch is False when the entry is absent or was just evicted
            if await asyncio.to_thread(self.store.touch, blob.hash):
                cached.append(blob)
            else:
                missing.append(blob)

        run_log.info(
            "transfer_run_started",
            peer_id=peer_id,
            wanted=len(blobs),
            cached=len(cached),
            missing=len(missing),
            wanted_digest=fast_digest(",".join(b.hash for b in blobs), key=peer_id or ""),
        )

        pending = {asyncio.ensure_future(self._join(blob)): blob.hash for blob in missing}
        failed = 0
        try:
            for raw in invalid:
                failed += 1
                yield FetchOutcome.failed(raw, "invalid hash")

            for blob in cached:
                await self._record_usage(peer_id, blob.hash)
                yield FetchOutcome.already_cached(blob.hash)

            while pending:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    pending.pop(finished)
                    outcome = finished.result()
                    if outcome.ok:
                        await self._record_usage(peer_id, outcome.hash)
                    else:
                        failed += 1
                        run_log.warning("blob_fetch_failed", hash=outcome.hash, reason=outcome.reason)
                    yield outcome
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        run_log.info("transfer_run_finished", peer_id=peer_id, failed=failed)
        if failed:
            self.bus.publish(
                Notification(
                    title="Sync incomplete",
                    message=f"{failed} file(s) could not be downloaded",
                    severity=NotificationType.WARNING,
                    duration=timedelta(seconds=10),
                )
            )

    async def _join(self, blob: WantedBlob) -> FetchOutcome:
        """Wait for the shared download of ``blob``, starting it if needed.

        The download is cancelled only when every run waiting on it has been
        cancelled.
        """
        shared = self._inflight.get(blob.hash)
        if shared is None or shared.abandoned:
            shared = _SharedFetch(asyncio.ensure_future(self._fetch_with_retry(blob)))
            self._inflight[blob.hash] = shared
            shared.task.add_done_callback(lambda _: self._release(blob.hash, shared))

        shared.waiters += 1
        cancelled = False
        try:
            return await asyncio.shield(shared.task)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            shared.waiters -= 1
            if cancelled and shared.waiters == 0 and not shared.task.done():
                shared.abandoned = True
                shared.task.cancel()

    def _release(self, content_hash: str, shared: _SharedFetch) -> None:
        if self._inflight.get(content_hash) is shared:
            del self._inflight[content_hash]

    async def _fetch_with_retry(self, blob: WantedBlob) -> FetchOutcome:
        config = self._settings()
        task = FetchTask(hash=blob.hash, requested_at=utcnow())
        self._tasks[blob.hash] = task
        last_error: Optional[Exception] = None

        try:
            for attempt in range(1, config.fetch_attempts + 1):
                # Another writer may have committed it while we waited
                if await asyncio.to_thread(self.store.touch, blob.hash):
                    task.state = FetchState.DONE
                    return FetchOutcome.already_cached(blob.hash)

                if self.connection is not None and not self.connection.is_connected:
                    logger.debug("fetch_waiting_for_connection", hash=blob.hash)
                    await self.connection.wait_until_connected()

                async with self._slots:
                    task.state = FetchState.IN_FLIGHT
                    task.attempts = attempt
                    try:
                        entry = await self._download(blob, config.fetch_timeout)
                    except (NotFoundError, IoFailureError) as e:
                        task.state = FetchState.FAILED
                        return FetchOutcome.failed(blob.hash, str(e))
                    except (TransientNetworkError, CorruptTransferError) as e:
                        last_error = e
                    except Exception as e:
                        logger.exception("fetch_unexpected_error", hash=blob.hash)
                        task.state = FetchState.FAILED
                        return FetchOutcome.failed(blob.hash, f"unexpected error: {e}")
                    else:
                        task.state = FetchState.DONE
                        return FetchOutcome.fetched(blob.hash, entry)

                logger.info(
                    "fetch_attempt_failed",
                    hash=blob.hash,
                    attempt=attempt,
                    max_attempts=config.fetch_attempts,
                    error=str(last_error),
                )
                if attempt < config.fetch_attempts:
                    task.state = FetchState.PENDING
                    await asyncio.sleep(config.fetch_backoff * attempt)

            task.state = FetchState.FAILED
            return FetchOutcome.failed(blob.hash, str(last_error))
        finally:
            if self._tasks.get(blob.hash) is task:
                del self._tasks[blob.hash]

    async def _download(self, blob: WantedBlob, stall_timeout: float) -> ContentEntry:
        """Stream one blob into a spool file and commit it to the store.

        ``stall_timeout`` bounds the wait for each chunk. Throttle waits and
        the commit are not timed.
        """
        with tempfile.SpooledTemporaryFile(
            max_size=SPOOL_MEMORY_LIMIT, dir=self.store.tmp_path
        ) as spool:
            await self._receive(blob, spool, stall_timeout)
            spool.seek(0)

            commit = asyncio.ensure_future(asyncio.to_thread(self.store.put, blob.hash, spool))
            try:
                return await asyncio.shield(commit)
            except asyncio.CancelledError:
                # The worker thread keeps reading the spool until it returns
                await asyncio.wait({commit})
                if not commit.cancelled():
                    commit.exception()
                raise

    async def _receive(self, blob: WantedBlob, spool: BinaryIO, stall_timeout: float) -> None:
        stream = self._fetcher(blob.hash)
        chunks = aiter(stream)
        received = 0
        try:
            while True:
                try:
                    async with asyncio.timeout(stall_timeout):
                        chunk = await anext(chunks, _END_OF_STREAM)
                except TimeoutError as e:
                    raise TransientNetworkError(
                        f"Download of {blob.hash} timed out: no data for {stall_timeout}s"
                    ) from e
                if chunk is _END_OF_STREAM:
                    return

                received += len(chunk)
                if blob.size_bytes is not None and received > blob.size_bytes:
                    raise CorruptTransferError(
                        blob.hash,
                        reason=f"received more than the announced {blob.size_bytes} bytes",
                    )
                await self._throttle.consume(len(chunk))
                spool.write(chunk)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _record_usage(self, peer_id: Optional[str], content_hash: str) -> None:
        if self.ledger is None:
            return
        if peer_id:
            await asyncio.to_thread(self.ledger.record_seen, peer_id, content_hash)
        else:
            await asyncio.to_thread(self.ledger.record_anonymous, content_hash)


def _coerce_wanted(wanted: Iterable[Wanted]) -> tuple[list[WantedBlob], list[str]]:
    """Normalize and de-duplicate wanted hashes, keeping first-seen order."""
    blobs: dict[str, WantedBlob] = {}
    invalid: list[str] = []
    for item in wanted:
        raw = item.hash if isinstance(item, WantedBlob) else item
        try:
            content_hash = normalize_hash(raw)
        except ValueError:
            invalid.append(raw)
            continue
        if content_hash in blobs:
            continue
        size = item.size_bytes if isinstance(item, WantedBlob) else None
        blobs[content_hash] = WantedBlob(content_hash, size)
    return list(blobs.values()), invalid


