"""PipelineService -- wires catalog, store, filter engine and board together.

Data flow:
    StageCatalog + DealStore -> compute_view() -> BoardController.seed()
    drag gesture -> BoardController -> DealStore.move_to_stage()
    move settled -> refresh() -> compute_view() -> seed()

The ViewState (current user, owner scope, search term, filter set) is held
explicitly here and passed into the engine on every recompute.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from src.crm.pipeline.board import BoardController, DragOutcome, DragState
from src.crm.pipeline.exceptions import PipelineLoadError
from src.crm.pipeline.export import export_pipeline_csv, pipeline_export_summary
from src.crm.pipeline.filters import compute_view
from src.crm.pipeline.notifications import CelebrationHook, Notifier
from src.crm.pipeline.repository import DealRepository, StageRepository
from src.crm.pipeline.schemas import (
    Deal,
    DealCreate,
    DealUpdate,
    ExportSummary,
    FilterSet,
    MutationResult,
    PipelineView,
    QuickFilter,
    ViewState,
)
from src.crm.pipeline.store import DealStore, StageCatalog

logger = structlog.get_logger(__name__)


class PipelineService:
    """One pipeline board session.

    Args:
        deal_repository: Remote deal persistence.
        stage_repository: Remote stage catalog.
        view: Initial view state (owner scope, current user, search, filters).
        notifier: Sink for user-visible success/error messages.
        celebration_hook: Fired when a deal is dropped in a won stage.
        rollback_on_failure: Overrides Settings.PIPELINE_ROLLBACK_ON_FAILURE.
    """

    def __init__(
        self,
        deal_repository: DealRepository,
        stage_repository: StageRepository,
        *,
        view: ViewState | None = None,
        notifier: Notifier | None = None,
        celebration_hook: CelebrationHook | None = None,
        rollback_on_failure: bool | None = None,
    ) -> None:
        self._view = view or ViewState()
        self._catalog = StageCatalog(stage_repository)
        self._store = DealStore(
            deal_repository,
            self._catalog,
            notifier,
            owner_id=self._view.owner_id,
        )
        self._board = BoardController(
            self._store,
            celebration_hook=celebration_hook,
            on_settled=self._on_move_settled,
            rollback_on_failure=rollback_on_failure,
        )
        self._pipeline: PipelineView | None = None
        self._load_error: str | None = None

    # ── State ───────────────────────────────────────────────────────────────

    @property
    def view_state(self) -> ViewState:
        return self._view.model_copy(deep=True)

    @property
    def pipeline(self) -> PipelineView | None:
        """Latest engine output; None until a load succeeds."""
        return self._pipeline

    @property
    def load_error(self) -> str | None:
        return self._load_error

    @property
    def board(self) -> BoardController:
        return self._board

    @property
    def catalog(self) -> StageCatalog:
        return self._catalog

    @property
    def store(self) -> DealStore:
        return self._store

    # ── Loading ─────────────────────────────────────────────────────────────

    async def load(self) -> PipelineView | None:
        """Fetch stages (once) and deals, then build the board.

        A fetch failure puts the service in the board-level error state:
        ``load_error`` is set and no view is produced.
        """
        try:
            if not self._catalog.loaded:
                await self._catalog.load()
            await self._store.load()
        except PipelineLoadError as exc:
            self._load_error = str(exc)
            self._pipeline = None
            logger.error("pipeline_service.load_failed", error=str(exc))
            return None

        self._load_error = None
        return self.recompute()

    async def refresh(self) -> PipelineView | None:
        """Re-fetch deals from the remote store and re-seed the board."""
        return await self.load()

    def recompute(self, now: datetime | None = None) -> PipelineView | None:
        """Re-run the filter engine over the current data and re-seed."""
        if not self._store.loaded or not self._catalog.loaded:
            return None
        stages = self._catalog.stages
        self._pipeline = compute_view(self._store.deals, stages, self._view, now)
        self._board.seed(self._pipeline.by_stage, stages)
        return self._pipeline

    # ── View State ──────────────────────────────────────────────────────────

    def set_search_term(self, search_term: str) -> PipelineView | None:
        self._view.search_term = search_term
        return self.recompute()

    def set_filters(self, filters: FilterSet) -> PipelineView | None:
        self._view.filters = filters
        return self.recompute()

    def set_quick_filter(self, quick_filter: QuickFilter) -> PipelineView | None:
        self._view.filters = self._view.filters.model_copy(
            update={"quick_filter": quick_filter}
        )
        return self.recompute()

    def clear_filters(self) -> PipelineView | None:
        self._view.search_term = ""
        self._view.filters = FilterSet()
        return self.recompute()

    def set_current_user(self, user_id: str | None) -> PipelineView | None:
        self._view.current_user_id = user_id
        return self.recompute()

    async def set_owner_scope(self, owner_id: str | None) -> PipelineView | None:
        """Change the owner scope and reload the deal list for it."""
        self._view.owner_id = owner_id
        self._store.scope_to(owner_id)
        try:
            await self._store.load()
        except PipelineLoadError as exc:
            self._load_error = str(exc)
            self._pipeline = None
            logger.error("pipeline_service.owner_scope_load_failed", error=str(exc))
            return None
        self._load_error = None
        return self.recompute()

    # ── Deal Mutations ──────────────────────────────────────────────────────

    async def create_deal(self, data: DealCreate) -> MutationResult:
        result = await self._store.create(data)
        if result.ok:
            self.recompute()
        return result

    async def update_deal(self, deal_id: str, data: DealUpdate) -> MutationResult:
        result = await self._store.update(deal_id, data)
        if result.ok:
            self.recompute()
        return result

    async def delete_deal(self, deal_id: str) -> MutationResult:
        result = await self._store.delete(deal_id)
        if result.ok:
            self.recompute()
        return result

    # ── Drag Gesture ────────────────────────────────────────────────────────

    def start_drag(self, deal_id: str) -> DragState:
        return self._board.on_drag_start(deal_id)

    def drag_over(self, over_id: str | None) -> bool:
        return self._board.on_drag_over(over_id)

    async def end_drag(self, over_id: str | None = None) -> DragOutcome:
        return await self._board.on_drag_end(over_id)

    async def move_deal(self, deal_id: str, stage_id: str) -> DragOutcome:
        """Run a complete gesture that drops ``deal_id`` on ``stage_id``."""
        self._board.on_drag_start(deal_id)
        self._board.on_drag_over(stage_id)
        return await self._board.on_drag_end(stage_id)

    async def _on_move_settled(self, outcome: DragOutcome) -> None:
        logger.debug(
            "pipeline_service.move_settled",
            deal_id=outcome.deal_id,
            result=outcome.result.value,
        )
        await self.refresh()

    # ── Export ──────────────────────────────────────────────────────────────

    def retained_deals(self) -> list[Deal]:
        """Deals currently on the board, in catalog then column order."""
        if self._pipeline is None:
            return []
        return [
            deal
            for stage in self._catalog.stages
            for deal in self._pipeline.by_stage.get(stage.id, [])
        ]

    def export_csv(
        self,
        include_columns: list[str] | None = None,
        exclude_columns: list[str] | None = None,
    ) -> str:
        """CSV of the filtered deal set.

        Raises:
            ValueError: If no deals are retained.
        """
        return export_pipeline_csv(
            self.retained_deals(),
            self._catalog.stages,
            include_columns,
            exclude_columns,
        )

    def export_summary(self) -> ExportSummary:
        return pipeline_export_summary(self.retained_deals(), self._catalog.stages)
