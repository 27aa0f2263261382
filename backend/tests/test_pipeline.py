import base64
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError

from fakes import (
    SHELL_REPLY,
    SPARSE_REPLY,
    SPEEDMART_REPLY,
    BrokenObjectStore,
    FakeVisionClient,
    RecordingEvents,
    SequenceVisionClient,
)
from receiptflow.core.errors import (
    IllegalTransition,
    NotFoundOrForbidden,
    QuotaExceeded,
    StorageError,
    UnsupportedMedia,
    ValidationError,
)
from receiptflow.models.enums import JobStatus, PlanType, ProcessingMethod
from receiptflow.models.schemas import ReceiptUploadOptions
from receiptflow.models.tables import AccuracyLog, Expense, ProcessingJob, Receipt
from receiptflow.services.queue_service import ProcessingQueue
from receiptflow.services.receipt_pipeline import MANUAL_REVIEW_MESSAGE, RECEIPT_GONE_MESSAGE
from receiptflow.services.usage_service import PlanLimits, UsageGate
from receiptflow.utils.helpers import month_key

NO_EXPENSE = ReceiptUploadOptions(create_expense=False)


def _files(blob_dir):
    return [p for p in blob_dir.rglob("*") if p.is_file()] if blob_dir.exists() else []


async def _receipt_count(sessions) -> int:
    async with sessions() as db:
        return await db.scalar(select(func.count(Receipt.id)))


async def _job(sessions, receipt_id):
    async with sessions() as db:
        return await ProcessingQueue(db).get(receipt_id)


@pytest.mark.asyncio
async def test_submit_extracts_and_books_expense(make_pipeline, make_user, make_wallet, wallet_balance, png_bytes, blob_dir):
    owner_id = await make_user()
    wallet_id = await make_wallet(owner_id, "100.00")
    client = FakeVisionClient(reply=SPEEDMART_REPLY)
    pipeline = make_pipeline(client)

    result = await pipeline.submit(owner_id, png_bytes, "receipt.png", "image/png")

    assert result.success is True
    assert result.status == JobStatus.COMPLETED
    assert result.error is None
    assert result.receipt.status == JobStatus.COMPLETED
    assert result.receipt.content_type == "image/png"
    assert result.receipt.extracted_data["store_name"] == "99 Speedmart"
    assert result.receipt.extracted_data["total_amount"] == "15.30"
    assert result.receipt.processed_at is not None
    assert result.extracted_data.total_amount == Decimal("15.30")
    assert client.calls == [result.receipt.image_url]

    assert result.expense is not None
    assert result.expense.amount == Decimal("15.30")
    assert result.expense.receipt_id == result.receipt.id
    assert await wallet_balance(wallet_id) == Decimal("84.70")
    assert len(_files(blob_dir)) == 1

    await pipeline.dispatcher.drain()
    assert (await pipeline.usage_gate.summary(owner_id)).used == 1
    progress = await pipeline.progress.get(owner_id)
    assert progress.current_value == 1

    job = await _job(pipeline.session_factory, result.receipt.id)
    assert job.processing_method == ProcessingMethod.VISION_AI
    assert job.processing_started_at <= job.processing_completed_at


@pytest.mark.asyncio
async def test_timeout_fails_the_job_and_correction_recovers_it(make_pipeline, make_user, png_bytes, sessions):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY, delay=1.0), timeout=0.05)

    result = await pipeline.submit(owner_id, png_bytes, "receipt.png")

    assert result.success is False
    assert result.status == JobStatus.FAILED
    assert "did not respond" in result.error
    assert result.extracted_data is None
    assert result.expense is None
    assert result.receipt.extracted_data is None
    assert result.receipt.error_message == result.error

    await pipeline.dispatcher.drain()
    # A failed extraction does not use up quota
    assert (await pipeline.usage_gate.summary(owner_id)).used == 0
    failed_job = await _job(sessions, result.receipt.id)

    corrected = await pipeline.correct(
        owner_id, result.receipt.id, {"store_name": "Shell Station", "total_amount": "45.00", "category": "Transport"}
    )
    assert corrected.success is True
    assert corrected.status == JobStatus.COMPLETED
    assert corrected.receipt.extracted_data["total_amount"] == "45.00"
    assert corrected.receipt.error_message is None

    job = await _job(sessions, result.receipt.id)
    assert job.processing_started_at == failed_job.processing_started_at
    assert job.processing_completed_at == failed_job.processing_completed_at


@pytest.mark.asyncio
async def test_sparse_output_goes_to_manual_review(make_pipeline, make_user, make_wallet, png_bytes):
    owner_id = await make_user()
    await make_wallet(owner_id)
    pipeline = make_pipeline(FakeVisionClient(reply=SPARSE_REPLY))

    result = await pipeline.submit(owner_id, png_bytes, "receipt.png")

    assert result.status == JobStatus.MANUAL_REVIEW
    assert result.success is False
    assert result.error == MANUAL_REVIEW_MESSAGE
    assert result.receipt.extracted_data == {"category": "Transport", "payment_method": "Card"}
    assert result.expense is None

    pending = await pipeline.list_pending_review(owner_id)
    assert [r.id for r in pending] == [result.receipt.id]

    corrected = await pipeline.correct(owner_id, result.receipt.id, {"store_name": "Grab", "total_amount": "12.00"})
    assert corrected.status == JobStatus.COMPLETED
    assert await pipeline.list_pending_review(owner_id) == []


@pytest.mark.asyncio
async def test_fallback_stands_in_for_missing_vision_service(make_pipeline, make_user, png_bytes, sessions):
    owner_id = await make_user()
    pipeline = make_pipeline(None, allow_fallback=True)

    result = await pipeline.submit(owner_id, png_bytes, "receipt.png", options=NO_EXPENSE)

    assert result.status == JobStatus.COMPLETED
    assert result.receipt.extracted_data["store_name"] in {"99 Speedmart", "Shell Station", "Giant Supermarket"}
    job = await _job(sessions, result.receipt.id)
    assert job.processing_method == ProcessingMethod.FALLBACK


@pytest.mark.asyncio
async def test_quota_is_checked_before_anything_is_stored(make_pipeline, make_user, png_bytes, sessions, blob_dir):
    owner_id = await make_user(PlanType.FREE)
    client = FakeVisionClient(reply=SPEEDMART_REPLY)
    gate = UsageGate(
        sessions,
        limits={
            PlanType.FREE: PlanLimits(plan=PlanType.FREE, monthly_receipt_scans=0),
            PlanType.PREMIUM: PlanLimits(plan=PlanType.PREMIUM, monthly_receipt_scans=float("inf")),
        },
    )
    pipeline = make_pipeline(client, usage_gate=gate)

    with pytest.raises(QuotaExceeded):
        await pipeline.submit(owner_id, png_bytes, "receipt.png")

    assert client.calls == []
    assert _files(blob_dir) == []
    assert await _receipt_count(sessions) == 0


@pytest.mark.asyncio
async def test_unsupported_media_leaves_nothing_behind(make_pipeline, make_user, sessions, blob_dir):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))
    with pytest.raises(UnsupportedMedia):
        await pipeline.submit(owner_id, b"just some text", "notes.txt", "text/plain")
    assert _files(blob_dir) == []
    assert await _receipt_count(sessions) == 0


@pytest.mark.asyncio
async def test_storage_failure_aborts_intake(make_pipeline, make_user, png_bytes, sessions):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY), store=BrokenObjectStore())
    with pytest.raises(StorageError):
        await pipeline.submit(owner_id, png_bytes, "receipt.png")
    assert await _receipt_count(sessions) == 0


@pytest.mark.asyncio
async def test_database_failure_removes_the_stored_blob(make_pipeline, make_user, png_bytes, sessions, blob_dir, monkeypatch):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))

    async def _broken_enqueue(self, receipt_id, owner_id):
        raise OperationalError("INSERT INTO receipt_processing_queue", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ProcessingQueue, "enqueue", _broken_enqueue)

    with pytest.raises(StorageError):
        await pipeline.submit(owner_id, png_bytes, "receipt.png")
    assert _files(blob_dir) == []
    assert await _receipt_count(sessions) == 0


@pytest.mark.asyncio
async def test_delete_removes_receipt_and_blob_but_keeps_expense(make_pipeline, make_user, make_wallet, png_bytes, sessions, blob_dir):
    owner_id = await make_user()
    await make_wallet(owner_id)
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))
    result = await pipeline.submit(owner_id, png_bytes, "receipt.png")
    await pipeline.dispatcher.drain()
    await pipeline.correct(owner_id, result.receipt.id, {"total_amount": "16.00"})

    await pipeline.delete(owner_id, result.receipt.id)

    with pytest.raises(NotFoundOrForbidden):
        await pipeline.get_receipt(owner_id, result.receipt.id)
    assert _files(blob_dir) == []
    assert await _job(sessions, result.receipt.id) is None
    async with sessions() as db:
        expense = await db.get(Expense, result.expense.id)
    assert expense is not None
    assert expense.receipt_id is None

    await pipeline.dispatcher.drain()
    progress = await pipeline.progress.get(owner_id)
    assert (progress.current_value, progress.all_time_value) == (0, 1)


@pytest.mark.asyncio
async def test_other_owners_cannot_see_or_delete(make_pipeline, make_user, png_bytes):
    owner_id = await make_user()
    intruder = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))
    result = await pipeline.submit(owner_id, png_bytes, "receipt.png", options=NO_EXPENSE)

    with pytest.raises(NotFoundOrForbidden):
        await pipeline.get_receipt(intruder, result.receipt.id)
    with pytest.raises(NotFoundOrForbidden):
        await pipeline.delete(intruder, result.receipt.id)
    with pytest.raises(NotFoundOrForbidden):
        await pipeline.correct(intruder, result.receipt.id, {"total_amount": "1.00"})
    assert (await pipeline.get_receipt(owner_id, result.receipt.id)).id == result.receipt.id


@pytest.mark.asyncio
async def test_list_receipts_pages_newest_first(make_pipeline, make_user, png_bytes):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))
    ids = [
        (await pipeline.submit(owner_id, png_bytes, f"r{i}.png", options=NO_EXPENSE)).receipt.id for i in range(3)
    ]

    first = await pipeline.list_receipts(owner_id, limit=2)
    second = await pipeline.list_receipts(owner_id, limit=2, offset=2)
    assert [r.id for r in first] == [ids[2], ids[1]]
    assert [r.id for r in second] == [ids[0]]
    assert all(r.status == JobStatus.COMPLETED for r in first + second)

    for bad in ({"limit": 0}, {"limit": 101}, {"offset": -1}):
        with pytest.raises(ValidationError):
            await pipeline.list_receipts(owner_id, **bad)


@pytest.mark.asyncio
async def test_stats_summarise_recent_receipts(make_pipeline, make_user, png_bytes):
    owner_id = await make_user()
    client = SequenceVisionClient(SPEEDMART_REPLY, SPEEDMART_REPLY, SHELL_REPLY, SPARSE_REPLY)
    pipeline = make_pipeline(client)
    for _ in range(4):
        await pipeline.submit(owner_id, png_bytes, "receipt.png", options=NO_EXPENSE)

    stats = await pipeline.get_stats(owner_id, window_days=7)

    assert stats.window_days == 7
    assert stats.total_processed == 4
    assert stats.successful_extractions == 3
    assert stats.accuracy_rate == 75.0
    assert stats.average_processing_time_ms is not None
    assert [(s.store_name, s.count, s.total_amount) for s in stats.top_stores] == [
        ("99 Speedmart", 2, Decimal("30.60")),
        ("Shell Station", 1, Decimal("45.00")),
    ]
    assert stats.category_distribution == {"Food & Beverages": 2, "Transport": 2}
    assert stats.monthly_counts == {month_key(): 4}
    assert stats.status_counts == {"completed": 3, "manual_review": 1}

    with pytest.raises(ValidationError):
        await pipeline.get_stats(owner_id, window_days=0)


@pytest.mark.asyncio
async def test_stats_for_new_owner_are_empty(make_pipeline, make_user):
    owner_id = await make_user()
    stats = await make_pipeline(None).get_stats(owner_id)
    assert stats.total_processed == 0
    assert stats.accuracy_rate == 0.0
    assert stats.top_stores == []


@pytest.mark.asyncio
async def test_status_events_are_published(make_pipeline, make_user, png_bytes):
    owner_id = await make_user()
    events = RecordingEvents()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY), events=events)

    result = await pipeline.submit(owner_id, png_bytes, "receipt.png", options=NO_EXPENSE)
    await pipeline.dispatcher.drain()

    assert [event for rid, event in events.events if rid == result.receipt.id] == [
        "receipt_queued",
        "receipt_processing",
        "receipt_completed",
    ]


class _HookedVisionClient:
    """Runs ``hook(image_url)`` while the job is still processing, then replies."""

    def __init__(self, hook, reply: str = SPEEDMART_REPLY) -> None:
        self.hook = hook
        self.reply = reply

    async def complete(self, image_url: str, instruction: str) -> str:
        await self.hook(image_url)
        return self.reply


async def _receipt_id_for(sessions, image_url: str) -> int:
    async with sessions() as db:
        return await db.scalar(select(Receipt.id).where(Receipt.image_url == image_url))


@pytest.mark.asyncio
async def test_receipt_cannot_be_deleted_while_processing(make_pipeline, make_user, png_bytes, sessions):
    owner_id = await make_user()
    rejected = []

    async def _try_delete(image_url):
        try:
            await pipeline.delete(owner_id, await _receipt_id_for(sessions, image_url))
        except IllegalTransition as exc:
            rejected.append(exc)

    pipeline = make_pipeline(_HookedVisionClient(_try_delete))
    result = await pipeline.submit(owner_id, png_bytes, "receipt.png", options=NO_EXPENSE)

    assert [exc.current for exc in rejected] == ["processing"]
    assert result.status == JobStatus.COMPLETED
    assert (await pipeline.get_receipt(owner_id, result.receipt.id)).status == JobStatus.COMPLETED


@pytest.mark.parametrize("reply", [SPEEDMART_REPLY, "no json here"])
@pytest.mark.asyncio
async def test_receipt_removed_during_extraction_gives_failed_result(
    make_pipeline, make_user, png_bytes, sessions, blob_dir, reply
):
    owner_id = await make_user()

    async def _remove_rows(image_url):
        receipt_id = await _receipt_id_for(sessions, image_url)
        async with sessions() as db:
            async with db.begin():
                await db.execute(delete(ProcessingJob).where(ProcessingJob.receipt_id == receipt_id))
                await db.execute(delete(Receipt).where(Receipt.id == receipt_id))

    pipeline = make_pipeline(_HookedVisionClient(_remove_rows, reply=reply))
    result = await pipeline.submit(owner_id, png_bytes, "receipt.png")

    assert result.success is False
    assert result.status == JobStatus.FAILED
    assert result.error == RECEIPT_GONE_MESSAGE
    assert result.expense is None
    assert await _receipt_count(sessions) == 0
    assert _files(blob_dir) == []


@pytest.mark.asyncio
async def test_every_extraction_run_is_logged_with_confidence(make_pipeline, make_user, png_bytes, sessions):
    owner_id = await make_user()
    pipeline = make_pipeline(SequenceVisionClient(SPEEDMART_REPLY, SHELL_REPLY, SPARSE_REPLY))
    for _ in range(3):
        await pipeline.submit(owner_id, png_bytes, "receipt.png", options=NO_EXPENSE)

    async with sessions() as db:
        logs = (await db.execute(select(AccuracyLog).order_by(AccuracyLog.id))).scalars().all()

    assert [log.processing_method for log in logs] == [ProcessingMethod.VISION_AI] * 3
    assert logs[0].confidence_scores == {"store_name": 0.9, "total_amount": 0.95, "date": 0.85, "items": 0.8}
    assert logs[1].confidence_scores == {"store_name": 0.9, "total_amount": 0.95, "date": 0.0, "items": 0.0}
    assert set(logs[2].confidence_scores.values()) == {0.0}
    assert all(log.manual_corrections is None for log in logs)

    await pipeline.correct(owner_id, logs[2].receipt_id, {"store_name": "Grab", "total_amount": "12.00"})
    stats = await pipeline.get_stats(owner_id)
    assert stats.corrected_extractions == 1
    assert stats.average_confidence["store_name"] == pytest.approx(0.6, abs=1e-3)
    assert stats.average_confidence["items"] == pytest.approx(0.267, abs=1e-3)


@pytest.mark.asyncio
async def test_failed_extraction_writes_no_accuracy_log(make_pipeline, make_user, png_bytes, sessions):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(exc=RuntimeError("upstream 500")))
    result = await pipeline.submit(owner_id, png_bytes, "receipt.png")

    assert result.status == JobStatus.FAILED
    async with sessions() as db:
        assert await db.scalar(select(func.count(AccuracyLog.id))) == 0
    assert [r.id for r in await pipeline.list_failed(owner_id)] == [result.receipt.id]


@pytest.mark.asyncio
async def test_search_matches_store_name_and_expense_description(make_pipeline, make_user, make_wallet, png_bytes):
    owner_id = await make_user()
    other_owner = await make_user()
    await make_wallet(owner_id, "500.00")
    pipeline = make_pipeline(SequenceVisionClient(SPEEDMART_REPLY, SHELL_REPLY, SHELL_REPLY, SPEEDMART_REPLY))

    speedmart = await pipeline.submit(owner_id, png_bytes, "a.png", options=NO_EXPENSE)
    shell = await pipeline.submit(owner_id, png_bytes, "b.png", options=NO_EXPENSE)
    fuel = await pipeline.submit(
        owner_id, png_bytes, "c.png", options=ReceiptUploadOptions(description="Fuel for delivery van")
    )
    await pipeline.submit(other_owner, png_bytes, "d.png", options=NO_EXPENSE)

    assert [r.id for r in await pipeline.search_receipts(owner_id, "speedMART")] == [speedmart.receipt.id]
    assert [r.id for r in await pipeline.search_receipts(owner_id, "shell")] == [fuel.receipt.id, shell.receipt.id]
    assert [r.id for r in await pipeline.search_receipts(owner_id, "delivery")] == [fuel.receipt.id]
    assert [r.id for r in await pipeline.search_receipts(owner_id, "shell", limit=1)] == [fuel.receipt.id]
    assert await pipeline.search_receipts(owner_id, "100%") == []
    assert all(r.status == JobStatus.COMPLETED for r in await pipeline.search_receipts(owner_id, "s"))

    for bad in ({"term": "   "}, {"term": "shell", "limit": 0}):
        with pytest.raises(ValidationError):
            await pipeline.search_receipts(owner_id, **bad)


@pytest.mark.asyncio
async def test_submit_base64_data_url(make_pipeline, make_user, png_bytes):
    owner_id = await make_user()
    pipeline = make_pipeline(FakeVisionClient(reply=SPEEDMART_REPLY))
    data_url = "data:image/png;base64," + base64.b64encode(png_bytes).decode()

    result = await pipeline.submit_base64(owner_id, data_url, options=NO_EXPENSE)

    assert result.status == JobStatus.COMPLETED
    assert result.receipt.content_type == "image/png"
    assert result.receipt.filename.startswith("receipt_")
    assert result.receipt.filename.endswith(".png")

    with pytest.raises(UnsupportedMedia):
        await pipeline.submit_base64(owner_id, base64.b64encode(png_bytes).decode())
