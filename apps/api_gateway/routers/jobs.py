"""
HTTP роуты состояния заданий.

- GET  /v1/jobs/{job_id}        - стадия задачи пайплайна, задачи по модальностям и итоговый отчёт
- POST /v1/jobs/{job_id}/cancel - запрос отмены задачи пайплайна или запуска бэкапа (202)

Отмена асинхронная: обработчик увидит запрос между стадиями / на ближайшем опросе.

Авторизация: Depends(service_auth_dep)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from apps.api_gateway.deps import service_auth_dep
from offchain_agent.common.errors import ErrCode
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.security import AuthContext
from offchain_agent.contracts.http_api import CancelAcceptedResponse, JobStatusResponse, ModalityStatus
from offchain_agent.domain.outcome import OutcomeReport
from offchain_agent.queue import cancellation
from offchain_agent.storage.db import db_session
from offchain_agent.storage.repositories import ModalityTaskRepository, PipelineJobRepository

log = get_project_logger()

router = APIRouter()


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, ctx: AuthContext = Depends(service_auth_dep)) -> JobStatusResponse:
    with db_session() as session:
        job = PipelineJobRepository(session).get(job_id)
        if job is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": ErrCode.NOT_FOUND, "message": "Задача не найдена"},
            )
        tasks = ModalityTaskRepository(session).list_for_job(job_id)

        resp = JobStatusResponse(
            job_id=job.job_id,
            source_id=job.source_id,
            stage=job.stage.value,
            partial=job.partial,
            failure_reason=job.failure_reason,
            modalities=[
                ModalityStatus(modality=t.modality, status=t.status.value, attempts=t.attempts, error_kind=t.error_kind)
                for t in tasks
            ],
        )
        if job.report:
            report = OutcomeReport.from_dict(job.report)
            resp.report_status = report.status
            resp.successes = report.successes
            resp.failures = {u.unit: u.error_kind or "" for u in report.failures}
            resp.unreached = report.unreached_units
            resp.near_duplicates = list(report.notes.get("near_duplicates") or [])
        return resp


@router.post("/jobs/{job_id}/cancel", response_model=CancelAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def cancel_job(job_id: str, ctx: AuthContext = Depends(service_auth_dep)) -> CancelAcceptedResponse:
    cancellation.request_cancel(job_id)
    log.info("job_cancel_accepted", extra={"payload": {"job_id": job_id, "subject": ctx.subject}})
    return CancelAcceptedResponse(job_id=job_id)
