"""Deal Store and Stage Catalog -- the authoritative in-memory pipeline data.

StageCatalog loads the ordered stage list once per session.

DealStore holds the authoritative deal list for the current owner scope and
is its single writer. Every mutation goes to the remote store first; local
state only changes after the remote call succeeds. Failures are logged,
surfaced through the Notifier and returned as ``MutationResult(ok=False)``
rather than raised, so callers such as the board controller never see a
persistence exception.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crm.pipeline.exceptions import (
    DealNotFoundError,
    InvalidStageError,
    PipelineLoadError,
)
from src.crm.pipeline.notifications import LoggingNotifier, Notifier
from src.crm.pipeline.repository import DealRepository, StageRepository
from src.crm.pipeline.schemas import (
    Deal,
    DealCreate,
    DealUpdate,
    MutationResult,
    Stage,
)

logger = structlog.get_logger(__name__)


# ── Stage Catalog ───────────────────────────────────────────────────────────


class StageCatalog:
    """Ordered, read-mostly list of pipeline stages.

    Args:
        repository: StageRepository used for the one-shot fetch.
    """

    def __init__(self, repository: StageRepository) -> None:
        self._repo = repository
        self._stages: list[Stage] = []
        self._by_id: dict[str, Stage] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def stages(self) -> list[Stage]:
        """Stages in board order."""
        return list(self._stages)

    async def load(self) -> list[Stage]:
        """Fetch the stage catalog.

        Raises:
            PipelineLoadError: If the remote fetch fails.
        """
        try:
            stages = await self._repo.list_stages()
        except Exception as exc:
            logger.error("stage_catalog.load_failed", error=str(exc), exc_info=True)
            raise PipelineLoadError(f"Failed to fetch pipeline stages: {exc}") from exc

        self._stages = sorted(stages, key=lambda s: (s.order_position, s.name))
        self._by_id = {stage.id: stage for stage in self._stages}
        self._loaded = True
        logger.info("stage_catalog.loaded", stage_count=len(self._stages))
        return self.stages

    def get(self, stage_id: str) -> Stage | None:
        return self._by_id.get(stage_id)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._by_id

    def __len__(self) -> int:
        return len(self._stages)

    def require(self, stage_id: str) -> Stage:
        """Return the stage or raise InvalidStageError."""
        stage = self._by_id.get(stage_id)
        if stage is None:
            raise InvalidStageError(stage_id)
        return stage


# ── Deal Store ──────────────────────────────────────────────────────────────


class DealStore:
    """Authoritative deal list with remote-first mutations.

    Args:
        repository: DealRepository for remote persistence.
        catalog: StageCatalog used to validate stage ids before any write.
        notifier: Sink for user-visible success/error messages.
        owner_id: Owner scope; None loads every owner's deals.
    """

    def __init__(
        self,
        repository: DealRepository,
        catalog: StageCatalog,
        notifier: Notifier | None = None,
        owner_id: str | None = None,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._notifier = notifier or LoggingNotifier()
        self._owner_id = owner_id
        self._deals: list[Deal] = []
        self._loaded = False

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def deals(self) -> list[Deal]:
        """Snapshot of the authoritative deal list."""
        return list(self._deals)

    def get(self, deal_id: str) -> Deal | None:
        for deal in self._deals:
            if deal.id == deal_id:
                return deal
        return None

    # ── Fetch ───────────────────────────────────────────────────────────────

    def scope_to(self, owner_id: str | None) -> None:
        """Change the owner scope; takes effect on the next load()."""
        self._owner_id = owner_id

    async def load(self) -> list[Deal]:
        """Fetch the deal list for the owner scope.

        On failure the previous list is kept and the store is marked unloaded.

        Raises:
            PipelineLoadError: If the remote fetch fails.
        """
        try:
            deals = await self._repo.list_deals(self._owner_id)
        except Exception as exc:
            self._loaded = False
            logger.error(
                "deal_store.load_failed",
                owner_id=self._owner_id,
                error=str(exc),
                exc_info=True,
            )
            raise PipelineLoadError(f"Failed to fetch deals: {exc}") from exc

        self._deals = list(deals)
        self._loaded = True
        logger.info(
            "deal_store.loaded",
            owner_id=self._owner_id,
            deal_count=len(self._deals),
        )
        return self.deals

    # ── Mutations ───────────────────────────────────────────────────────────

    async def create(self, data: DealCreate) -> MutationResult:
        """Create a deal remotely, then add it to the local list."""
        result = await self._mutate(
            "create",
            lambda: self._create_remote(data),
            failure_message="Failed to create deal",
        )
        if result.ok and result.deal is not None:
            if self._in_scope(result.deal):
                self._deals.insert(0, result.deal)
            self._notifier.success("Deal created successfully", deal_id=result.deal.id)
        return result

    async def update(self, deal_id: str, data: DealUpdate) -> MutationResult:
        """Apply a partial update remotely, then replace the local record."""
        result = await self._mutate(
            "update",
            lambda: self._update_remote(deal_id, data),
            failure_message="Failed to update deal",
            deal_id=deal_id,
        )
        if result.ok and result.deal is not None:
            self._replace(result.deal)
            self._notifier.success("Deal updated successfully", deal_id=deal_id)
        return result

    async def delete(self, deal_id: str) -> MutationResult:
        """Delete a deal remotely, then drop it from the local list."""
        result = await self._mutate(
            "delete",
            lambda: self._delete_remote(deal_id),
            failure_message="Failed to delete deal",
            deal_id=deal_id,
        )
        if result.ok:
            self._deals = [d for d in self._deals if d.id != deal_id]
            self._notifier.success("Deal deleted successfully", deal_id=deal_id)
        return result

    async def move_to_stage(
        self,
        deal_id: str,
        stage_id: str,
        stage_changed_at: datetime | None = None,
    ) -> MutationResult:
        """Move a deal to another stage and refresh its stage_changed_at."""
        changed_at = stage_changed_at or datetime.now(timezone.utc)

        async def call() -> Deal:
            self._catalog.require(stage_id)
            return await self._repo.move_deal_to_stage(deal_id, stage_id, changed_at)

        result = await self._mutate(
            "move",
            call,
            failure_message="Failed to move deal",
            deal_id=deal_id,
            stage_id=stage_id,
        )
        if result.ok and result.deal is not None:
            self._replace(result.deal)
        return result

    # ── Internals ───────────────────────────────────────────────────────────

    async def _create_remote(self, data: DealCreate) -> Deal:
        self._catalog.require(data.stage_id)
        return await self._repo.create_deal(data)

    async def _update_remote(self, deal_id: str, data: DealUpdate) -> Deal:
        if data.stage_id is not None:
            self._catalog.require(data.stage_id)
        return await self._repo.update_deal(deal_id, data)

    async def _delete_remote(self, deal_id: str) -> None:
        await self._repo.delete_deal(deal_id)

    async def _mutate(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        *,
        failure_message: str,
        **context: Any,
    ) -> MutationResult:
        """Run a remote call and convert any failure into a MutationResult."""
        try:
            outcome = await call()
        except (DealNotFoundError, InvalidStageError) as exc:
            logger.warning(
                f"deal_store.{operation}_rejected", error=str(exc), **context
            )
            self._notifier.error(f"{failure_message}: {exc}", **context)
            return MutationResult(ok=False, error=str(exc))
        except Exception as exc:
            logger.warning(
                f"deal_store.{operation}_failed",
                error=str(exc),
                exc_info=True,
                **context,
            )
            self._notifier.error(f"{failure_message}: {exc}", **context)
            return MutationResult(ok=False, error=str(exc))

        logger.info(f"deal_store.{operation}_succeeded", **context)
        deal = outcome if isinstance(outcome, Deal) else None
        return MutationResult(ok=True, deal=deal)

    def _in_scope(self, deal: Deal) -> bool:
        return self._owner_id is None or deal.owner_id == self._owner_id

    def _replace(self, deal: Deal) -> None:
        if not self._in_scope(deal):
            self._deals = [d for d in self._deals if d.id != deal.id]
            return
        for index, existing in enumerate(self._deals):
            if existing.id == deal.id:
                self._deals[index] = deal
                return
        self._deals.insert(0, deal)
