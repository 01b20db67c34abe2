"""
Hotmart integration API

Purchase webhooks are funnelled through the sequential purchase queue so that
user creation and enrollment never run concurrently. The queue inspection
endpoints back the admin dashboard's queue monitor.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address

from lms_server.config import get_settings
from lms_server.middleware.auth import require_api_secret
from lms_server.schemas.purchase import (
    EnrollUserRequest,
    HotmartPurchaseData,
    missing_fields,
)
from lms_server.schemas.queue import JobLookup, QueueStats
from lms_server.services.hotmart_service import CourseNotFoundError, HotmartService
from lms_server.services.purchase_queue import PurchaseQueue
from lms_server.utils import metrics
from lms_server.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)

authorized = [Depends(require_api_secret)]


def _purchase_rate_limit() -> str:
    return get_settings().purchase_rate_limit


def get_queue(request: Request) -> PurchaseQueue:
    return request.app.state.purchase_queue


def get_hotmart(request: Request) -> HotmartService:
    return request.app.state.hotmart


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _parse_purchase(body: Dict[str, Any]):
    """Return (purchase, None) or (None, 400 response)"""
    missing = missing_fields(body)
    if missing:
        return None, _error(400, "Missing required fields", missing_fields=missing)
    try:
        return HotmartPurchaseData.model_validate(body), None
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        if "email" in fields:
            return None, _error(400, "Invalid email format")
        return None, _error(400, "Invalid purchase data", invalid_fields=fields)


def _user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {key: user.get(key) for key in ("id", "email", "full_name", "role")}


def _enrollment_summary(enrollment: Dict[str, Any]) -> Dict[str, Any]:
    keys = ("id", "user_id", "course_id", "enrolled_at", "progress_percentage", "transaction_id")
    return {key: enrollment.get(key) for key in keys}


@router.post("/process-purchase", dependencies=authorized)
@limiter.limit(_purchase_rate_limit)
async def process_purchase(
    request: Request,
    body: Dict[str, Any] = Body(...),
    queue: PurchaseQueue = Depends(get_queue),
):
    """
    Process a complete purchase (create user + enroll) through the queue.

    Responds once the job reaches a terminal state: 201 for a new enrollment
    or user, 200 when the transaction had already been processed.
    """
    purchase, error = _parse_purchase(body)
    if error:
        return error

    job = queue.enqueue(purchase)
    try:
        # A client disconnect must not cancel the queued job
        result = await asyncio.shield(job.future)
    except Exception as exc:
        logger.error(
            "hotmart.purchase_failed",
            extra={"job_id": job.id, "transaction_id": purchase.transaction_id, "error": str(exc)[:500]},
        )
        return _error(500, "Internal server error", message=str(exc) or type(exc).__name__, job_id=job.id)

    return JSONResponse(
        status_code=200 if result.transaction_already_processed else 201,
        content=jsonable_encoder({
            "success": True,
            "job_id": job.id,
            "data": {
                "user": _user_summary(result.user),
                "enrollment": _enrollment_summary(result.enrollment),
                "is_new_user": result.is_new_user,
                "is_new_enrollment": result.is_new_enrollment,
                "transaction_already_processed": result.transaction_already_processed,
            },
            "message": result.message,
        }),
    )


@router.post("/create-user", dependencies=authorized)
async def create_user(
    body: Dict[str, Any] = Body(...),
    hotmart: HotmartService = Depends(get_hotmart),
):
    """Find or create the buyer's account without enrolling them"""
    purchase, error = _parse_purchase(body)
    if error:
        return error

    try:
        user = await hotmart.create_user_from_purchase(purchase)
    except Exception as exc:
        logger.exception("create-user failed")
        return _error(500, "Internal server error", message=str(exc))

    return JSONResponse(
        status_code=201,
        content=jsonable_encoder({"success": True, "user": _user_summary(user), "message": "User created"}),
    )


@router.post("/enroll-user", dependencies=authorized)
async def enroll_user(
    body: Dict[str, Any] = Body(...),
    hotmart: HotmartService = Depends(get_hotmart),
):
    try:
        req = EnrollUserRequest.model_validate(body)
    except ValidationError:
        return _error(400, "user_id and course_id are required")

    try:
        enrollment = await hotmart.enroll_user_in_course(req.user_id, req.course_id)
    except Exception as exc:
        logger.exception("enroll-user failed")
        return _error(500, "Internal server error", message=str(exc))

    return JSONResponse(
        status_code=201,
        content=jsonable_encoder({
            "success": True,
            "enrollment": _enrollment_summary(enrollment),
            "message": "User enrolled",
        }),
    )


@router.get("/courses/{course_id}/validate")
async def validate_course(
    course_id: str,
    hotmart: HotmartService = Depends(get_hotmart),
):
    """Check that a course exists and is published"""
    try:
        course = await hotmart.validate_course(course_id)
    except CourseNotFoundError:
        return _error(404, "Course not found or not published", course_id=course_id)
    except Exception as exc:
        logger.exception("validate course failed")
        return _error(500, "Internal server error", message=str(exc))

    return {"success": True, "course": course}


# ─── Queue monitor ─────────────────────────────────────────────────

@router.get("/queue/stats", response_model=QueueStats, dependencies=authorized)
async def queue_stats(queue: PurchaseQueue = Depends(get_queue)):
    return queue.get_stats()


@router.get("/queue/jobs/{job_id}", response_model=JobLookup, dependencies=authorized)
async def queue_job(job_id: str, queue: PurchaseQueue = Depends(get_queue)):
    result = queue.get_result(job_id)
    if result is not None:
        return JobLookup(job_id=job_id, status="completed", result=jsonable_encoder(result))

    error = queue.get_error(job_id)
    if error is not None:
        return JobLookup(job_id=job_id, status="failed", error=error)

    raise HTTPException(status_code=404, detail="Job not found or expired")


@router.get("/queue/metrics", dependencies=authorized)
async def queue_metrics():
    return metrics.get_snapshot()


@router.get("/test")
async def test():
    """Smoke endpoint listing the integration routes"""
    return {
        "success": True,
        "message": "Hotmart API is up",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": [
            "POST /api/hotmart/process-purchase",
            "POST /api/hotmart/create-user",
            "POST /api/hotmart/enroll-user",
            "GET /api/hotmart/courses/:courseId/validate",
            "GET /api/hotmart/queue/stats",
            "GET /api/hotmart/queue/jobs/:jobId",
            "GET /api/hotmart/queue/metrics",
        ],
    }
