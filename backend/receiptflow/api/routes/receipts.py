"""API routes for receipt capture, review and correction."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, Response, UploadFile, status

from receiptflow.api.dependencies import get_current_owner_id, get_pipeline
from receiptflow.core.config import settings
from receiptflow.core.observability import sentry_breadcrumb
from receiptflow.models.schemas import (
    Base64ReceiptUpload,
    ReceiptListResponse,
    ReceiptProcessingResult,
    ReceiptRead,
    ReceiptStats,
    ReceiptUploadOptions,
    UsageSummary,
)
from receiptflow.services.receipt_pipeline import ReceiptPipeline

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("", response_model=ReceiptProcessingResult, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    file: UploadFile = File(...),
    create_expense: bool = Form(True),
    wallet_id: Optional[int] = Form(None),
    category: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    """Upload a receipt image, extract it and optionally record an expense."""
    # One byte past the limit is enough for the size check to reject it
    data = await file.read(settings.MAX_UPLOAD_SIZE + 1)
    sentry_breadcrumb("upload", "receipt upload received", data={"filename": file.filename, "bytes": len(data)})
    options = ReceiptUploadOptions(
        create_expense=create_expense,
        wallet_id=wallet_id,
        category=category,
        description=description,
    )
    return await pipeline.submit(owner_id, data, file.filename, file.content_type, options)


@router.post("/base64", response_model=ReceiptProcessingResult, status_code=status.HTTP_201_CREATED)
async def upload_receipt_base64(
    payload: Base64ReceiptUpload,
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    """Upload a receipt sent as a ``data:image/...;base64,`` URL."""
    sentry_breadcrumb("upload", "base64 receipt upload received", data={"chars": len(payload.image)})
    return await pipeline.submit_base64(owner_id, payload.image, payload.filename, payload.options)


@router.get("", response_model=ReceiptListResponse)
async def list_receipts(
    limit: int = Query(20),
    offset: int = Query(0),
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    receipts = await pipeline.list_receipts(owner_id, limit=limit, offset=offset)
    return ReceiptListResponse(receipts=receipts, limit=limit, offset=offset)


@router.get("/review", response_model=List[ReceiptRead])
async def list_pending_review(
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    """Receipts waiting for a human correction."""
    return await pipeline.list_pending_review(owner_id)


@router.get("/failed", response_model=List[ReceiptRead])
async def list_failed(
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    return await pipeline.list_failed(owner_id)


@router.get("/search", response_model=List[ReceiptRead])
async def search_receipts(
    q: str = Query(...),
    limit: int = Query(20),
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    """Search by store name or expense description."""
    return await pipeline.search_receipts(owner_id, q, limit=limit)


@router.get("/stats", response_model=ReceiptStats)
async def receipt_stats(
    days: int = Query(30),
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    return await pipeline.get_stats(owner_id, window_days=days)


@router.get("/usage", response_model=UsageSummary)
async def receipt_usage(
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    return await pipeline.usage_gate.summary(owner_id)


@router.get("/{receipt_id}", response_model=ReceiptRead)
async def get_receipt(
    receipt_id: int,
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    return await pipeline.get_receipt(owner_id, receipt_id)


@router.patch("/{receipt_id}/corrections", response_model=ReceiptProcessingResult)
async def correct_receipt(
    receipt_id: int,
    corrections: Dict[str, Any] = Body(...),
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    """Override extracted fields; ``null`` clears a field."""
    return await pipeline.correct(owner_id, receipt_id, corrections)


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_receipt(
    receipt_id: int,
    owner_id: int = Depends(get_current_owner_id),
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    await pipeline.delete(owner_id, receipt_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
