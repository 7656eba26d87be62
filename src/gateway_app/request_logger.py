import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_app.db_models import RequestLog, utcnow
from gateway_app.logging_config import log_anomaly
from gateway_app.token_usage import EMPTY_USAGE, TokenUsage

logger = logging.getLogger(__name__)


async def prune_request_logs(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    retention_days: int,
) -> int:
    if retention_days <= 0:
        return 0

    cutoff = utcnow() - timedelta(days=retention_days)
    async with session_maker() as session:
        result = await session.execute(
            delete(RequestLog).where(RequestLog.created_at < cutoff)
        )
        await session.commit()
        deleted = result.rowcount if result.rowcount is not None else 0

    if deleted > 0:
        logger.info(
            "Pruned %d request logs older than %d days",
            deleted,
            retention_days,
        )
    return deleted


@dataclass(slots=True)
class RequestLogEntry:
    api_key_id: int
    key_name: str
    model_id: str
    source_id: int | None
    status_code: int
    is_stream: bool
    latency_ms: int
    usage: TokenUsage = EMPTY_USAGE
    cost: float = 0.0
    error_msg: str | None = None


_SENTINEL = object()


class RequestLogger:
    """
    Fire-and-forget sink for request log records.

    ``append`` never blocks and never raises: records go onto a bounded queue
    and a single worker task writes them in batches. A full queue or a failed
    write is reported to the operational log only.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        queue_maxsize: int = 2000,
        batch_size: int = 100,
        flush_interval_seconds: float = 1.0,
    ):
        self._session_maker = session_maker
        self._queue: asyncio.Queue[RequestLogEntry | object] = asyncio.Queue(
            maxsize=queue_maxsize
        )
        self._batch_size = batch_size
        self._flush_interval_seconds = flush_interval_seconds
        self._worker_task: asyncio.Task[None] | None = None
        self._accepting = False

    async def start(self) -> None:
        if self._worker_task:
            return
        self._accepting = True
        self._worker_task = asyncio.create_task(self._run_worker(), name="request-logger")

    async def stop(self) -> None:
        """Stops accepting records and waits until everything queued is written."""
        if self._worker_task is None:
            return
        self._accepting = False
        await self._queue.put(_SENTINEL)
        await self._worker_task
        self._worker_task = None

    def append(self, entry: RequestLogEntry) -> None:
        if not self._accepting:
            logger.debug("Request logger not running; dropping log for key %s", entry.api_key_id)
            return

        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            logger.warning("Request log queue full; dropping log for key %s", entry.api_key_id)
            log_anomaly(
                "log_dropped",
                api_key_id=entry.api_key_id,
                model_id=entry.model_id,
                cost=entry.cost,
            )

    async def _run_worker(self) -> None:
        loop = asyncio.get_running_loop()
        stopping = False

        while not stopping:
            batch: list[RequestLogEntry] = []
            item = await self._queue.get()
            deadline = loop.time() + self._flush_interval_seconds

            # The stop sentinel closes the final batch, which is still written.
            while True:
                if item is _SENTINEL:
                    stopping = True
                    break
                batch.append(item)
                remaining = deadline - loop.time()
                if len(batch) >= self._batch_size or remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break

            await self._write_batch(batch)

    async def _write_batch(self, batch: list[RequestLogEntry]) -> None:
        if not batch:
            return

        rows = [
            RequestLog(
                api_key_id=item.api_key_id,
                key_name=item.key_name,
                model_id=item.model_id,
                source_id=item.source_id,
                prompt_tokens=item.usage.prompt_tokens,
                completion_tokens=item.usage.completion_tokens,
                total_tokens=item.usage.total_tokens,
                cost=item.cost,
                latency_ms=item.latency_ms,
                status_code=item.status_code,
                is_stream=item.is_stream,
                error_msg=item.error_msg,
            )
            for item in batch
        ]

        try:
            async with self._session_maker() as session:
                session.add_all(rows)
                await session.commit()
        except Exception as exc:
            logger.exception("Failed to write %d request logs", len(batch))
            log_anomaly(
                "log_write_failed",
                records=len(batch),
                api_key_ids=sorted({item.api_key_id for item in batch}),
                error=str(exc),
            )
