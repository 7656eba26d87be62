import logging
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from gateway_app.db_models import RequestLog, utcnow
from gateway_app.logging_config import ANOMALY_LOGGER_NAME
from gateway_app.request_logger import RequestLogEntry, RequestLogger, prune_request_logs
from gateway_app.token_usage import TokenUsage


def _entry(**overrides) -> RequestLogEntry:
    fields = {
        "api_key_id": 1,
        "key_name": "alice",
        "model_id": "gpt-4o-mini",
        "source_id": 3,
        "status_code": 200,
        "is_stream": False,
        "latency_ms": 42,
    }
    fields.update(overrides)
    return RequestLogEntry(**fields)


@pytest.mark.asyncio
async def test_request_logger_persists_entry(session_maker) -> None:
    request_logger = RequestLogger(session_maker, batch_size=1, flush_interval_seconds=0.01)
    await request_logger.start()

    request_logger.append(
        _entry(
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            cost=0.00002,
        )
    )
    await request_logger.stop()

    async with session_maker() as session:
        row = (await session.execute(select(RequestLog))).scalar_one()

    assert row.api_key_id == 1
    assert row.key_name == "alice"
    assert row.source_id == 3
    assert row.prompt_tokens == 10
    assert row.completion_tokens == 5
    assert row.total_tokens == 15
    assert row.cost == pytest.approx(0.00002)
    assert row.latency_ms == 42
    assert row.error_msg is None


@pytest.mark.asyncio
async def test_stop_drains_pending_entries(session_maker) -> None:
    request_logger = RequestLogger(session_maker, batch_size=50, flush_interval_seconds=5.0)
    await request_logger.start()

    for index in range(7):
        request_logger.append(_entry(status_code=500, error_msg=f"boom {index}"))
    await request_logger.stop()

    async with session_maker() as session:
        count = (await session.execute(select(func.count(RequestLog.id)))).scalar_one()
    assert count == 7


@pytest.mark.asyncio
async def test_append_before_start_is_dropped(session_maker) -> None:
    request_logger = RequestLogger(session_maker)

    request_logger.append(_entry())

    async with session_maker() as session:
        count = (await session.execute(select(func.count(RequestLog.id)))).scalar_one()
    assert count == 0


@pytest.mark.asyncio
async def test_full_queue_drops_and_reports(session_maker, caplog) -> None:
    request_logger = RequestLogger(session_maker, queue_maxsize=1)
    await request_logger.start()

    with caplog.at_level(logging.WARNING):
        # Both appends happen before the worker gets a chance to run.
        request_logger.append(_entry())
        request_logger.append(_entry(api_key_id=2))
    await request_logger.stop()

    anomalies = [r for r in caplog.records if r.name == ANOMALY_LOGGER_NAME]
    assert [r.anomaly_fields["anomaly"] for r in anomalies] == ["log_dropped"]
    assert anomalies[0].anomaly_fields["api_key_id"] == 2
    async with session_maker() as session:
        count = (await session.execute(select(func.count(RequestLog.id)))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_write_failure_is_reported_not_raised(caplog) -> None:
    def broken_session():
        raise RuntimeError("disk full")

    request_logger = RequestLogger(broken_session, batch_size=1, flush_interval_seconds=0.01)
    await request_logger.start()

    with caplog.at_level(logging.WARNING):
        request_logger.append(_entry())
        await request_logger.stop()

    anomalies = [r for r in caplog.records if r.name == ANOMALY_LOGGER_NAME]
    assert anomalies[0].anomaly_fields["anomaly"] == "log_write_failed"
    assert anomalies[0].anomaly_fields["records"] == 1


@pytest.mark.asyncio
async def test_prune_request_logs_deletes_old_rows(session_maker) -> None:
    now = utcnow()
    async with session_maker() as session:
        session.add_all(
            [
                RequestLog(
                    api_key_id=1,
                    key_name="alice",
                    model_id="gpt-4o-mini",
                    status_code=200,
                    created_at=now - timedelta(days=40),
                ),
                RequestLog(
                    api_key_id=1,
                    key_name="alice",
                    model_id="gpt-4o-mini",
                    status_code=200,
                    created_at=now - timedelta(days=2),
                ),
            ]
        )
        await session.commit()

    assert await prune_request_logs(session_maker, retention_days=0) == 0
    assert await prune_request_logs(session_maker, retention_days=30) == 1

    async with session_maker() as session:
        count = (await session.execute(select(func.count(RequestLog.id)))).scalar_one()
    assert count == 1
