"""Health, processor status and request metrics endpoints."""

import os

from fastapi import APIRouter, Depends, Query

from escrowrail.shared.file_store import FileStore
from escrowrail.api_gateway.services.container import Services, get_services

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "healthy", "service": "api-gateway"}


@router.get("/processor/health")
def processor_health(services: Services = Depends(get_services)):
    return services.processor.health()


@router.get("/metrics")
def get_metrics(limit: int = Query(100, le=1000), services: Services = Depends(get_services)):
    metrics_path = os.path.join(services.settings.data_dir, "metrics", "service_metrics.jsonl")
    entries = FileStore.read_jsonl(metrics_path)
    entries.reverse()
    return {"entries": entries[:limit], "total": len(entries)}
