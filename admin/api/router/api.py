"""Admin API 라우터 (모든 API 통합)"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from admin.api.handler.job import JobHandler
from admin.api.model.job import EnqueueRequest, EnqueueResponse, RepeatableResponse
from admin.exception import JobNotFoundError, QueueNotConfiguredError, RepeatableNotFoundError
from broker.base import BaseBroker
from broker.exception import BrokerConnectionError, BrokerError
from common.model.job import JobCounts, JobStatus
from dispatcher.exception import DispatcherError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_job_handler(request: Request) -> JobHandler:
    return request.app.state.job_handler


def get_broker(request: Request) -> BaseBroker:
    return request.app.state.broker


def _broker_unavailable(e: BrokerError) -> HTTPException:
    status_code = 503 if isinstance(e, BrokerConnectionError) else 500
    logger.error(f"Broker error in API: {e}")
    return HTTPException(status_code=status_code, detail=e.message)


# ============================================
# JOB API
# ============================================

@router.post("/api/queues/{queue}/jobs", response_model=EnqueueResponse, status_code=201, tags=["Job"])
async def enqueue_job(queue: str, request: EnqueueRequest, handler: JobHandler = Depends(get_job_handler)):
    """잡 등록 (즉시 반환)"""
    try:
        return await handler.enqueue(queue, request)
    except QueueNotConfiguredError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except DispatcherError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BrokerError as e:
        raise _broker_unavailable(e)


@router.get("/api/jobs/{job_id}", response_model=JobStatus, tags=["Job"])
async def get_job(job_id: str, handler: JobHandler = Depends(get_job_handler)):
    """잡 상태 조회"""
    try:
        return await handler.get_status(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except BrokerError as e:
        raise _broker_unavailable(e)


@router.get("/api/queues/{queue}/jobs/{job_id}", response_model=JobStatus, tags=["Job"])
async def get_queue_job(queue: str, job_id: str, handler: JobHandler = Depends(get_job_handler)):
    """큐 지정 잡 상태 조회 (다른 큐의 잡이면 404)"""
    try:
        return await handler.get_status(job_id, queue)
    except (QueueNotConfiguredError, JobNotFoundError) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except BrokerError as e:
        raise _broker_unavailable(e)


# ============================================
# QUEUE API
# ============================================

@router.get("/api/counts", response_model=dict[str, JobCounts], tags=["Queue"])
async def get_all_counts(handler: JobHandler = Depends(get_job_handler)):
    """설정된 모든 큐의 상태별 잡 개수"""
    try:
        return await handler.get_all_counts()
    except BrokerError as e:
        raise _broker_unavailable(e)


@router.get("/api/queues/{queue}/counts", response_model=JobCounts, tags=["Queue"])
async def get_counts(queue: str, handler: JobHandler = Depends(get_job_handler)):
    """큐 상태별 잡 개수"""
    try:
        return await handler.get_counts(queue)
    except QueueNotConfiguredError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except BrokerError as e:
        raise _broker_unavailable(e)


@router.get("/api/queues/{queue}/repeatables", response_model=list[RepeatableResponse], tags=["Queue"])
async def get_repeatables(queue: str, handler: JobHandler = Depends(get_job_handler)):
    """반복 잡 등록 목록"""
    try:
        return await handler.get_repeatables(queue)
    except QueueNotConfiguredError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except BrokerError as e:
        raise _broker_unavailable(e)


@router.delete("/api/queues/{queue}/repeatables/{key}", status_code=204, tags=["Queue"])
async def delete_repeatable(queue: str, key: str, handler: JobHandler = Depends(get_job_handler)):
    """반복 잡 등록 해제"""
    try:
        await handler.remove_repeatable(queue, key)
        return Response(status_code=204)
    except (QueueNotConfiguredError, RepeatableNotFoundError) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except BrokerError as e:
        raise _broker_unavailable(e)


# ============================================
# Health Check
# ============================================

@router.get("/health", tags=["Health"])
async def health_check(request: Request):
    """서버 상태 확인 (liveness probe)"""
    return {
        "status": "healthy",
        "queues": request.app.state.job_handler.queue_names,
        "version": request.app.version,
    }


@router.get("/ready", tags=["Health"])
async def ready_check(broker: BaseBroker = Depends(get_broker)):
    """브로커 연결 상태 확인 (readiness probe)"""
    if await broker.ping():
        return {"status": "ready", "broker": "ok"}
    return JSONResponse(
        status_code=503,
        content={"status": "not ready", "broker": "unreachable"},
    )
