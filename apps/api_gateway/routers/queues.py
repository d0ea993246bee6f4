"""
HTTP роуты очередей.

- POST /v1/push/{queue}         - callback push-брокера (подпись JWT, без X-API-Key)
- GET  /v1/queues/{queue}/depth - глубина очереди и возраст старейшего сообщения
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from apps.api_gateway.deps import service_auth_dep
from offchain_agent.common.errors import ErrCode
from offchain_agent.common.logging import get_project_logger
from offchain_agent.common.security import AuthContext
from offchain_agent.contracts.http_api import PushDeliveryResponse, QueueDepthResponse
from offchain_agent.queue.factory import get_queue_client

log = get_project_logger()

router = APIRouter()


@router.post("/push/{queue}", response_model=PushDeliveryResponse)
async def push_delivery(
    queue: str,
    request: Request,
    upstash_signature: str | None = Header(default=None, alias="Upstash-Signature"),
) -> JSONResponse:
    client = get_queue_client()
    if getattr(client, "mode", None) != "push":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": ErrCode.NOT_FOUND, "message": "Push-доставка выключена (QUEUE_MODE != push)"},
        )

    body = await request.body()
    result = await run_in_threadpool(client.deliver, queue, body, upstash_signature)
    payload = PushDeliveryResponse(action=result.action, job_id=result.job_id, details={"error": result.error})
    return JSONResponse(status_code=result.status_code, content=payload.model_dump())


@router.get("/queues/{queue}/depth", response_model=QueueDepthResponse)
def queue_depth(queue: str, ctx: AuthContext = Depends(service_auth_dep)) -> QueueDepthResponse:
    sample = get_queue_client().depth(queue)
    return QueueDepthResponse(
        queue=sample.queue_name,
        depth=sample.depth,
        oldest_message_age_sec=round(sample.oldest_message_age, 3),
        sampled_at=sample.sampled_at.isoformat(),
    )
