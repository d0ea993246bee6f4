"""
HTTP роуты медиа-пайплайна.

- POST /v1/media/jobs                   - поставить обработку источника (202, асинхронное завершение)
- GET  /v1/media/{source_id}/duplicates - почти-дубликаты источника по перцептивной подписи

Авторизация: Depends(service_auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from apps.api_gateway.deps import service_auth_dep
from offchain_agent.common.config import get_settings
from offchain_agent.common.errors import ErrCode, PublishError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.security import AuthContext
from offchain_agent.contracts.http_api import (
    JobAcceptedResponse,
    MediaJobRequest,
    NearDuplicateItem,
    NearDuplicatesResponse,
)
from offchain_agent.queue.dispatcher import Q_MEDIA, enqueue_extract_media
from offchain_agent.services.duplicates import find_near_duplicates, load_signature

log = get_project_logger()

router = APIRouter()


@router.post("/media/jobs", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_media_job(
    req: MediaJobRequest,
    ctx: AuthContext = Depends(service_auth_dep),
) -> JobAcceptedResponse:
    try:
        envelope = enqueue_extract_media(
            source_id=req.source_id,
            payload_ref=req.payload_ref,
            modalities=[m.value for m in req.modalities] or None,
        )
    except PublishError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": e.code, "message": e.message},
        ) from e

    log.info(
        "media_job_accepted",
        extra={"payload": {"job_id": envelope.job_id, "source_id": req.source_id, "subject": ctx.subject}},
    )
    return JobAcceptedResponse(job_id=envelope.job_id, trace_id=envelope.trace_id, queue=Q_MEDIA)


@router.get("/media/{source_id}/duplicates", response_model=NearDuplicatesResponse)
def near_duplicates(
    source_id: str,
    threshold: int | None = Query(default=None, ge=0, le=64),
    ctx: AuthContext = Depends(service_auth_dep),
) -> NearDuplicatesResponse:
    signature = load_signature(source_id)
    if signature is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": ErrCode.NOT_FOUND, "message": "Подпись источника не найдена"},
        )
    limit = threshold if threshold is not None else get_settings().pipeline_dhash_threshold
    matches = find_near_duplicates(signature, threshold=limit, exclude_source_id=source_id)
    return NearDuplicatesResponse(
        source_id=source_id,
        threshold=limit,
        matches=[NearDuplicateItem(source_id=m.source_id, distance=m.distance) for m in matches],
    )
