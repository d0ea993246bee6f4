"""
HTTP роуты бэкапа.

- POST /v1/backups/run - поставить запуск бэкапа (202, асинхронное завершение)

Авторизация: Depends(service_auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from apps.api_gateway.deps import service_auth_dep
from offchain_agent.common.errors import PublishError
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.security import AuthContext
from offchain_agent.contracts.http_api import BackupRunRequest, JobAcceptedResponse
from offchain_agent.queue.dispatcher import Q_BACKUP, enqueue_backup

log = get_project_logger()

router = APIRouter()


@router.post("/backups/run", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def run_backup(
    req: BackupRunRequest | None = None,
    ctx: AuthContext = Depends(service_auth_dep),
) -> JobAcceptedResponse:
    req = req or BackupRunRequest()
    try:
        envelope = enqueue_backup(kinds=[k.value for k in req.kinds] or None, limit=req.limit)
    except PublishError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": e.code, "message": e.message},
        ) from e

    log.info("backup_run_accepted", extra={"payload": {"job_id": envelope.job_id, "subject": ctx.subject}})
    return JobAcceptedResponse(job_id=envelope.job_id, trace_id=envelope.trace_id, queue=Q_BACKUP)
