"""
HTTP routes: data sources, preview, saved reports, templates, schedules
and run history. Every route delegates to the ReportingService held on
app.state.
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from report_engine.errors import (
    BuilderStateError,
    DataSourceUnavailable,
    ExecutionCancelled,
    NotFoundError,
    ReportEngineError,
    ReportValidationError,
    UnknownDataSourceError,
)
from report_engine.models import ReportDraft, ScheduleSettings
from report_engine.service import ReportingService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_service(request: Request) -> ReportingService:
    return request.app.state.service


def _http_error(e: ReportEngineError) -> HTTPException:
    if isinstance(e, ReportValidationError):
        return HTTPException(status_code=422, detail={
            "message": str(e),
            "errors": [asdict(fe) for fe in e.errors],
        })
    if isinstance(e, (NotFoundError, UnknownDataSourceError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (BuilderStateError, ExecutionCancelled)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, DataSourceUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"Unhandled report engine error: {e}")
    return HTTPException(status_code=500, detail=str(e))


def _dump(model) -> dict:
    return model.model_dump(mode="json")


# ═══════════════════════════════════════════════════════════════════════
# DATA SOURCES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/data-sources")
def list_data_sources(service: ReportingService = Depends(get_service)):
    return [_dump(ds) for ds in service.data_sources()]


@router.get("/data-sources/{data_source_id}")
def get_data_source(data_source_id: str, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.catalog.get(data_source_id))
    except ReportEngineError as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════════════════════════
# PREVIEW & SAVED REPORTS
# ═══════════════════════════════════════════════════════════════════════

class SaveReportRequest(BaseModel):
    configuration: ReportDraft
    created_by: str = ""


class FavoriteRequest(BaseModel):
    favorited: Optional[bool] = None  # None toggles


class TemplateFromReportRequest(BaseModel):
    name: str
    description: str = ""
    category: Optional[str] = None


@router.post("/reports/preview")
def preview_report(draft: ReportDraft, force_refresh: bool = Query(False),
                   service: ReportingService = Depends(get_service)):
    try:
        config = service.build_configuration(draft)
        return _dump(service.preview(config, force_refresh=force_refresh))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/reports", status_code=201)
def save_report(req: SaveReportRequest, service: ReportingService = Depends(get_service)):
    try:
        config = service.build_configuration(req.configuration, created_by=req.created_by)
        return _dump(service.reports.save(config))
    except ReportEngineError as e:
        raise _http_error(e)


@router.get("/reports")
def list_reports(favorites_only: bool = Query(False), data_source_id: Optional[str] = Query(None),
                 search: Optional[str] = Query(None), created_by: Optional[str] = Query(None),
                 limit: Optional[int] = Query(None, ge=1, le=1000), offset: int = Query(0, ge=0),
                 service: ReportingService = Depends(get_service)):
    reports = service.reports.list_saved(
        favorites_only=favorites_only,
        data_source_id=data_source_id,
        search=search,
        created_by=created_by,
        limit=limit,
        offset=offset,
    )
    return [_dump(r) for r in reports]


@router.get("/reports/{report_id}")
def get_report(report_id: str, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.reports.get_saved(report_id))
    except ReportEngineError as e:
        raise _http_error(e)


@router.put("/reports/{report_id}")
def update_report(report_id: str, draft: ReportDraft, service: ReportingService = Depends(get_service)):
    try:
        config = service.build_configuration(draft)
        return _dump(service.reports.update_configuration(report_id, config))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/reports/{report_id}/view")
def view_report(report_id: str, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.reports.record_view(report_id))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/reports/{report_id}/favorite")
def favorite_report(report_id: str, req: FavoriteRequest, service: ReportingService = Depends(get_service)):
    try:
        if req.favorited is None:
            return _dump(service.reports.toggle_favorite(report_id))
        return _dump(service.reports.set_favorite(report_id, req.favorited))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/reports/{report_id}/generate")
def generate_report(report_id: str, force_refresh: bool = Query(False), generated_by: str = Query(""),
                    service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.generate_saved(report_id, generated_by=generated_by, force_refresh=force_refresh))
    except ReportEngineError as e:
        raise _http_error(e)


@router.delete("/reports/{report_id}", status_code=204)
def delete_report(report_id: str, service: ReportingService = Depends(get_service)):
    try:
        service.scheduler.delete_report(report_id)
    except ReportEngineError as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═══════════════════════════════════════════════════════════════════════

class InstantiateTemplateRequest(BaseModel):
    name: Optional[str] = None
    created_by: str = ""


@router.get("/templates")
def list_templates(category: Optional[str] = Query(None), include_system: bool = Query(True),
                   service: ReportingService = Depends(get_service)):
    return [_dump(t) for t in service.reports.list_templates(category=category, include_system=include_system)]


@router.post("/reports/{report_id}/template", status_code=201)
def save_report_as_template(report_id: str, req: TemplateFromReportRequest,
                            service: ReportingService = Depends(get_service)):
    try:
        report = service.reports.get_saved(report_id)
        template = service.reports.save_as_template(
            report.configuration, name=req.name, description=req.description, category=req.category
        )
        return _dump(template)
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/templates/{template_id}/instantiate")
def instantiate_template(template_id: str, req: InstantiateTemplateRequest,
                         service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.reports.instantiate_template(template_id, created_by=req.created_by, name=req.name))
    except ReportEngineError as e:
        raise _http_error(e)


@router.delete("/templates/{template_id}", status_code=204)
def delete_template(template_id: str, service: ReportingService = Depends(get_service)):
    try:
        service.reports.delete_template(template_id)
    except ReportEngineError as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════════════════════════
# SCHEDULES & HISTORY
# ═══════════════════════════════════════════════════════════════════════

class ScheduleCreateRequest(BaseModel):
    schedule: ScheduleSettings
    created_by: str = ""


@router.post("/reports/{report_id}/schedules", status_code=201)
def create_schedule(report_id: str, req: ScheduleCreateRequest, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.scheduler.create_schedule(report_id, req.schedule, created_by=req.created_by))
    except ReportEngineError as e:
        raise _http_error(e)


@router.get("/schedules")
def list_schedules(report_id: Optional[str] = Query(None), service: ReportingService = Depends(get_service)):
    return [_dump(s) for s in service.schedules.list(report_id=report_id)]


@router.get("/schedules/{schedule_id}")
def get_schedule(schedule_id: str, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.schedules.get(schedule_id))
    except ReportEngineError as e:
        raise _http_error(e)


@router.put("/schedules/{schedule_id}")
def update_schedule(schedule_id: str, settings: ScheduleSettings, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.scheduler.update_schedule(schedule_id, settings))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/schedules/{schedule_id}/pause")
def pause_schedule(schedule_id: str, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.scheduler.set_enabled(schedule_id, False))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/schedules/{schedule_id}/resume")
def resume_schedule(schedule_id: str, service: ReportingService = Depends(get_service)):
    try:
        return _dump(service.scheduler.set_enabled(schedule_id, True))
    except ReportEngineError as e:
        raise _http_error(e)


@router.post("/schedules/{schedule_id}/run")
def run_schedule_now(schedule_id: str, service: ReportingService = Depends(get_service)):
    try:
        item = service.scheduler.run_now(schedule_id)
    except ReportEngineError as e:
        raise _http_error(e)
    if item is None:
        raise HTTPException(status_code=409, detail="Schedule is already running")
    return _dump(item)


@router.post("/schedules/{schedule_id}/retry")
def retry_schedule(schedule_id: str, service: ReportingService = Depends(get_service)):
    try:
        item = service.scheduler.retry(schedule_id)
    except ReportEngineError as e:
        raise _http_error(e)
    if item is None:
        raise HTTPException(status_code=409, detail="Schedule is already running")
    return _dump(item)


@router.delete("/schedules/{schedule_id}", status_code=204)
def delete_schedule(schedule_id: str, service: ReportingService = Depends(get_service)):
    try:
        service.scheduler.delete_schedule(schedule_id)
    except ReportEngineError as e:
        raise _http_error(e)


@router.get("/history")
def list_history(report_id: Optional[str] = Query(None), schedule_id: Optional[str] = Query(None),
                 limit: int = Query(100, ge=1, le=1000), service: ReportingService = Depends(get_service)):
    return [_dump(h) for h in service.history.list(report_id=report_id, schedule_id=schedule_id, limit=limit)]
