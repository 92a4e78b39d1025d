"""Notification API routes.

Errors from the engine are turned into ``{"success": false, "error": ...}``
responses by the handlers registered in ``main.create_app``.
"""

import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..config import settings
from ..dependencies import get_engine
from ..rate_limit import limiter
from .engine import BroadcastHandle, NotificationEngine
from .models import DeliveryStatus, NotificationKind, ScheduleStatus
from .schemas import CompletionRequest, ScheduleRequest, TestEmailRequest, UpdateRequest

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _broadcast_response(handle: BroadcastHandle, message: str) -> JSONResponse:
    done = handle.done
    body = {"success": True, "message": message, **handle.as_dict(done)}
    return JSONResponse(body, status_code=200 if done else 202)


@router.post("/workstream/new/{workstream_id}")
def notify_new_workstream(workstream_id: int, engine: NotificationEngine = Depends(get_engine)):
    handle = engine.notify_new(NotificationKind.NEW_WORKSTREAM, workstream_id)
    return _broadcast_response(handle, "New workstream notifications sent")


@router.post("/chapter/new/{chapter_id}")
def notify_new_chapter(chapter_id: int, engine: NotificationEngine = Depends(get_engine)):
    handle = engine.notify_new(NotificationKind.NEW_CHAPTER, chapter_id)
    return _broadcast_response(handle, "New chapter notifications sent")


@router.post("/assessment/new/{assessment_id}")
def notify_new_assessment(assessment_id: int, engine: NotificationEngine = Depends(get_engine)):
    handle = engine.notify_new(NotificationKind.NEW_ASSESSMENT, assessment_id)
    return _broadcast_response(handle, "New assessment notifications sent")


@router.post("/completion")
def notify_completion(body: CompletionRequest, engine: NotificationEngine = Depends(get_engine)):
    outcome = engine.notify_completion(body.user_id, body.workstream_id)
    return JSONResponse(
        {
            "success": outcome.status is DeliveryStatus.SENT,
            "message": "Completion notification processed",
            "result": outcome.as_dict(),
        }
    )


@router.post("/update")
def notify_update(body: UpdateRequest, engine: NotificationEngine = Depends(get_engine)):
    handle = engine.notify_update(
        body.target_id, body.target_type, [c.model_dump(mode="json") for c in body.changes]
    )
    return _broadcast_response(handle, "Update notifications sent")


@router.post("/schedule")
def schedule_notification(body: ScheduleRequest, engine: NotificationEngine = Depends(get_engine)):
    entry_id = engine.schedule(
        body.notification_type, body.target_id, body.target_type, body.trigger_time, body.payload
    )
    return JSONResponse(
        {"success": True, "message": "Notification scheduled successfully", "schedule_id": str(entry_id)},
        status_code=201,
    )


@router.post("/check/deadlines")
@limiter.limit(settings.rate_limit_manual_checks)
def check_deadlines(request: Request, engine: NotificationEngine = Depends(get_engine)):
    summary = engine.check_deadline_reminders()
    return JSONResponse({"success": True, "message": "Deadline check completed", **summary.as_dict()})


@router.post("/check/overdue")
@limiter.limit(settings.rate_limit_manual_checks)
def check_overdue(request: Request, engine: NotificationEngine = Depends(get_engine)):
    summary = engine.check_overdue()
    return JSONResponse({"success": True, "message": "Overdue check completed", **summary.as_dict()})


@router.post("/check/scheduled")
@limiter.limit(settings.rate_limit_manual_checks)
def check_scheduled(request: Request, engine: NotificationEngine = Depends(get_engine)):
    summary = engine.process_scheduled()
    return JSONResponse({"success": True, "message": "Scheduled notifications processed", **summary.as_dict()})


@router.get("/logs")
def recent_logs(limit: int | None = None, engine: NotificationEngine = Depends(get_engine)):
    logs = engine.recent_logs(limit)
    return JSONResponse({"success": True, "count": len(logs), "logs": logs})


@router.get("/stats")
def notification_stats(engine: NotificationEngine = Depends(get_engine)):
    return JSONResponse({"success": True, "stats": engine.stats()})


@router.get("/scheduled")
def scheduled_notifications(
    status: ScheduleStatus | None = None,
    limit: int | None = None,
    engine: NotificationEngine = Depends(get_engine),
):
    entries = engine.scheduled_entries(status, limit)
    return JSONResponse({"success": True, "count": len(entries), "entries": entries})


@router.get("/scheduled/{entry_id}")
def scheduled_notification(entry_id: uuid.UUID, engine: NotificationEngine = Depends(get_engine)):
    return JSONResponse({"success": True, "entry": engine.scheduled_entry(entry_id)})


@router.post("/test")
@limiter.limit(settings.rate_limit_manual_checks)
def send_test_email(request: Request, body: TestEmailRequest, engine: NotificationEngine = Depends(get_engine)):
    outcome = engine.send_test(body.email)
    if outcome.status is not DeliveryStatus.SENT:
        return JSONResponse({"success": False, "error": outcome.error, "result": outcome.as_dict()}, status_code=502)
    return JSONResponse({"success": True, "message": "Test email sent successfully", "result": outcome.as_dict()})
