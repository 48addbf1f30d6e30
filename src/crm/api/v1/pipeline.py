"""REST API endpoints for the pipeline board.

Provides stage and deal CRUD, the stage-move operation, the filtered board
view and CSV export. Repositories are read from app.state; every request
builds its own PipelineService session over them.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from src.crm.pipeline.board import DragResult
from src.crm.pipeline.metrics import utcnow
from src.crm.pipeline.notifications import RecordingNotifier
from src.crm.pipeline.schemas import (
    Deal,
    DealCreate,
    DealUpdate,
    ExportSummary,
    PipelineView,
    Stage,
    ViewState,
)
from src.crm.pipeline.service import PipelineService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


# ── Request / Response Schemas ──────────────────────────────────────────────


class MoveDealRequest(BaseModel):
    """Request body for moving a deal to another stage."""

    stage_id: str


class MoveDealResponse(BaseModel):
    """Result of a stage move."""

    result: DragResult
    deal: Deal | None = None
    from_stage_id: str | None = None
    to_stage_id: str | None = None
    celebrated: bool = False


class BoardResponse(BaseModel):
    """Filtered board: grouped deals, metrics and column order."""

    stages: list[Stage] = Field(default_factory=list)
    columns: dict[str, list[str]] = Field(default_factory=dict)
    pipeline: PipelineView


class ExportRequest(BaseModel):
    """Request body for a CSV export of the filtered board."""

    view: ViewState = Field(default_factory=ViewState)
    include_columns: list[str] | None = None
    exclude_columns: list[str] | None = None


# ── Helper ──────────────────────────────────────────────────────────────────


def _get_repositories(request: Request) -> tuple[Any, Any]:
    """Retrieve the deal and stage repositories from app.state, 503 if missing."""
    deal_repo = getattr(request.app.state, "deal_repository", None)
    stage_repo = getattr(request.app.state, "stage_repository", None)
    if deal_repo is None or stage_repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return deal_repo, stage_repo


def _deal_won(deal: Deal, stage: Stage) -> None:
    logger.info("pipeline_api.deal_won", deal_id=deal.id, stage_name=stage.name)


async def _loaded_service(
    request: Request,
    view: ViewState | None = None,
    notifier: RecordingNotifier | None = None,
) -> PipelineService:
    deal_repo, stage_repo = _get_repositories(request)
    service = PipelineService(
        deal_repo,
        stage_repo,
        view=view,
        notifier=notifier,
        celebration_hook=_deal_won,
    )
    await service.load()
    if service.load_error is not None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=service.load_error,
        )
    return service


def _require_deal(service: PipelineService, deal_id: str) -> Deal:
    deal = service.store.get(deal_id)
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal {deal_id} not found",
        )
    return deal


def _require_stage(service: PipelineService, stage_id: str) -> None:
    if stage_id not in service.catalog:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown stage: {stage_id}",
        )


def _mutation_failed(notifier: RecordingNotifier, error: str | None) -> HTTPException:
    detail = notifier.errors[-1] if notifier.errors else (error or "Mutation failed")
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


# ── Stages ──────────────────────────────────────────────────────────────────


@router.get("/stages", response_model=list[Stage])
async def list_stages(request: Request) -> list[Stage]:
    """Stage catalog in board order."""
    _, stage_repo = _get_repositories(request)
    return await stage_repo.list_stages()


# ── Deals ───────────────────────────────────────────────────────────────────


@router.get("/deals", response_model=list[Deal])
async def list_deals(
    request: Request,
    owner_id: str | None = Query(None, description="Restrict to one owner"),
) -> list[Deal]:
    """List deals, newest first."""
    deal_repo, _ = _get_repositories(request)
    return await deal_repo.list_deals(owner_id)


@router.get("/deals/{deal_id}", response_model=Deal)
async def get_deal(deal_id: str, request: Request) -> Deal:
    deal_repo, _ = _get_repositories(request)
    deal = await deal_repo.get_deal(deal_id)
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal {deal_id} not found",
        )
    return deal


@router.post("/deals", response_model=Deal, status_code=status.HTTP_201_CREATED)
async def create_deal(body: DealCreate, request: Request) -> Deal:
    """Create a deal in a known stage."""
    notifier = RecordingNotifier()
    service = await _loaded_service(request, notifier=notifier)
    _require_stage(service, body.stage_id)

    result = await service.create_deal(body)
    if not result.ok or result.deal is None:
        raise _mutation_failed(notifier, result.error)
    return result.deal


@router.patch("/deals/{deal_id}", response_model=Deal)
async def update_deal(deal_id: str, body: DealUpdate, request: Request) -> Deal:
    """Partially update a deal. A stage change refreshes stage_changed_at."""
    notifier = RecordingNotifier()
    service = await _loaded_service(request, notifier=notifier)
    _require_deal(service, deal_id)
    if body.stage_id is not None:
        _require_stage(service, body.stage_id)

    result = await service.update_deal(deal_id, body)
    if not result.ok or result.deal is None:
        raise _mutation_failed(notifier, result.error)
    return result.deal


@router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deal(deal_id: str, request: Request) -> Response:
    notifier = RecordingNotifier()
    service = await _loaded_service(request, notifier=notifier)
    _require_deal(service, deal_id)

    result = await service.delete_deal(deal_id)
    if not result.ok:
        raise _mutation_failed(notifier, result.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/deals/{deal_id}/move", response_model=MoveDealResponse)
async def move_deal(
    deal_id: str,
    body: MoveDealRequest,
    request: Request,
) -> MoveDealResponse:
    """Move a deal to another stage, as a single complete drag gesture.

    Moving a deal to the stage it is already in is a no-op.
    """
    notifier = RecordingNotifier()
    service = await _loaded_service(request, notifier=notifier)
    _require_deal(service, deal_id)
    _require_stage(service, body.stage_id)

    outcome = await service.move_deal(deal_id, body.stage_id)
    if outcome.result == DragResult.FAILED:
        raise _mutation_failed(notifier, outcome.error)

    return MoveDealResponse(
        result=outcome.result,
        deal=service.store.get(deal_id),
        from_stage_id=outcome.from_stage_id,
        to_stage_id=outcome.to_stage_id,
        celebrated=outcome.celebrated,
    )


# ── Board & Export ──────────────────────────────────────────────────────────


@router.post("/board", response_model=BoardResponse)
async def get_board(view: ViewState, request: Request) -> BoardResponse:
    """Filtered, grouped board for the given view state."""
    service = await _loaded_service(request, view=view)
    return BoardResponse(
        stages=service.catalog.stages,
        columns=service.board.columns,
        pipeline=service.pipeline,
    )


@router.post("/export")
async def export_pipeline(body: ExportRequest, request: Request) -> Response:
    """CSV download of the deals retained by the given view state."""
    service = await _loaded_service(request, view=body.view)
    try:
        content = service.export_csv(body.include_columns, body.exclude_columns)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    filename = f"pipeline-export-{utcnow():%Y-%m-%d}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/export/summary", response_model=ExportSummary)
async def export_summary(view: ViewState, request: Request) -> ExportSummary:
    service = await _loaded_service(request, view=view)
    return service.export_summary()
