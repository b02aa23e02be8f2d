"""Audit router - money ledger, webhook dedup ledger and undeliverable notifications."""

import os
from typing import Optional

from fastapi import APIRouter, Depends, Query

from escrowrail.shared.file_store import FileStore
from escrowrail.api_gateway.services.container import Services, get_services

router = APIRouter()


@router.get("/ledger")
def audit_ledger(
    booking_id: Optional[str] = Query(None),
    ref_id: Optional[str] = Query(None),
    limit: int = Query(100, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    if booking_id:
        entries = services.ledger.get_entries_for_booking(booking_id)
        return {"entries": entries, "total": len(entries)}
    if ref_id:
        entries = services.ledger.get_entries_for_ref(ref_id)
        return {"entries": entries, "total": len(entries)}

    entries, total = services.ledger.get_all_entries(limit, offset)
    return {"entries": entries, "total": total, "limit": limit, "offset": offset}


@router.get("/webhooks")
def audit_webhooks(limit: int = Query(100, le=500), services: Services = Depends(get_services)):
    entries = services.reconciler.recent(limit)
    return {"entries": entries, "total": len(entries)}


@router.get("/dlq")
def audit_dead_letters(limit: int = Query(100, le=500), services: Services = Depends(get_services)):
    dlq_path = os.path.join(services.settings.data_dir, "outbox", "dlq.jsonl")
    entries = FileStore.read_jsonl(dlq_path)
    entries.reverse()
    return {"entries": entries[:limit], "total": len(entries)}
