"""Board State Controller -- drag-and-drop state machine for the pipeline board.

Owns the visual per-stage ordered lists (seeded from compute_pipeline()) and
the transient state of the current drag gesture. Gesture events arrive from
the input layer as three callbacks:

    on_drag_start(deal_id)  IDLE -> DRAGGING
    on_drag_over(over_id)   DRAGGING, optimistic reorder / cross-column move
    on_drag_end(over_id)    DRAGGING -> IDLE, persist the net stage change

over_id is either a deal id (hovering a card) or a stage id (hovering empty
column space or a header). Board mutations are synchronous; the only
suspension point is the Deal Store move call, which is awaited after the
transient state has already been cleared so a stuck call never blocks the
next gesture.

The board holds copies of the deal records. Optimistic stage_id changes made
during a drag never touch the Deal Store's authoritative records.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from src.crm.config import get_settings
from src.crm.pipeline import metrics
from src.crm.pipeline.notifications import CelebrationHook, fire_celebration
from src.crm.pipeline.schemas import Deal, SortMode, Stage
from src.crm.pipeline.store import DealStore

logger = structlog.get_logger(__name__)

_SORT_CYCLE = [SortMode.MANUAL, SortMode.VALUE, SortMode.DATE, SortMode.ALPHA]
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# ── Gesture Types ───────────────────────────────────────────────────────────


class BoardPhase(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"


class DragResult(str, Enum):
    """What a finished gesture did."""

    NO_OP = "no_op"      # no net stage change, nothing persisted
    MOVED = "moved"      # persisted successfully
    FAILED = "failed"    # persistence failed


@dataclass
class DragState:
    """Transient record of the gesture in progress.

    origin_stage_id is None when the dragged id could not be found on the
    board at drag start; such a gesture never persists anything.
    """

    deal_id: str
    origin_stage_id: str | None
    origin_index: int | None
    original: Deal | None
    hover_stage_id: str | None
    hover_index: int | None
    last_valid_hover_stage_id: str | None = None
    # (stage holding the dragged deal, target stage, dragged id, over id)
    last_hover: tuple[str | None, str, str, str] | None = None


@dataclass
class PendingMove:
    """A move whose persistence call has not completed yet."""

    deal_id: str
    origin_stage_id: str
    origin_index: int
    target_stage_id: str
    original: Deal


@dataclass
class DragOutcome:
    result: DragResult
    deal_id: str | None = None
    from_stage_id: str | None = None
    to_stage_id: str | None = None
    celebrated: bool = False
    rolled_back: bool = False
    error: str | None = None


SettleCallback = Callable[[DragOutcome], Awaitable[Any] | Any]


def sort_column(deals: list[Deal], mode: SortMode) -> list[Deal]:
    """Order one column for the given sort mode (manual keeps input order)."""
    if mode == SortMode.VALUE:
        return sorted(deals, key=lambda d: d.value, reverse=True)
    if mode == SortMode.DATE:
        return sorted(
            deals,
            key=lambda d: metrics.as_aware(d.created_at) if d.created_at else _EPOCH,
            reverse=True,
        )
    if mode == SortMode.ALPHA:
        return sorted(deals, key=lambda d: (d.company or "").lower())
    return list(deals)


# ── Controller ──────────────────────────────────────────────────────────────


class BoardController:
    """Visual board state plus the drag gesture finite-state machine.

    Args:
        store: DealStore that persists stage moves.
        celebration_hook: Called (fire-and-forget) when a deal lands in a
            won stage.
        on_settled: Called with the DragOutcome after a persisted move
            resolves; typically triggers an authoritative refresh.
        won_stage_pattern: Stage-name pattern that triggers the celebration.
            Defaults to Settings.PIPELINE_WON_STAGE_PATTERN.
        rollback_on_failure: Put the deal back in its origin slot when the
            move fails. Defaults to Settings.PIPELINE_ROLLBACK_ON_FAILURE.
    """

    def __init__(
        self,
        store: DealStore,
        *,
        celebration_hook: CelebrationHook | None = None,
        on_settled: SettleCallback | None = None,
        won_stage_pattern: str | None = None,
        rollback_on_failure: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._celebration_hook = celebration_hook
        self._on_settled = on_settled
        self._won_pattern = won_stage_pattern or settings.PIPELINE_WON_STAGE_PATTERN
        self._rollback_on_failure = (
            settings.PIPELINE_ROLLBACK_ON_FAILURE
            if rollback_on_failure is None
            else rollback_on_failure
        )

        self._stages: list[Stage] = []
        self._columns: dict[str, list[Deal]] = {}
        self._phase = BoardPhase.IDLE
        self._drag: DragState | None = None
        self._sort_mode = SortMode.MANUAL
        self._pending_seed: tuple[Mapping[str, list[Deal]], list[Stage] | None] | None = None
        self._in_flight: dict[str, PendingMove] = {}

    # ── Read Access ─────────────────────────────────────────────────────────

    @property
    def phase(self) -> BoardPhase:
        return self._phase

    @property
    def drag(self) -> DragState | None:
        return self._drag

    @property
    def sort_mode(self) -> SortMode:
        return self._sort_mode

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    @property
    def columns(self) -> dict[str, list[str]]:
        """Stage id -> ordered deal ids."""
        return {
            stage_id: [deal.id for deal in deals]
            for stage_id, deals in self._columns.items()
        }

    @property
    def in_flight(self) -> frozenset[str]:
        """Ids of deals whose move is awaiting persistence."""
        return frozenset(self._in_flight)

    @property
    def has_pending_seed(self) -> bool:
        return self._pending_seed is not None

    def column(self, stage_id: str) -> list[Deal]:
        return list(self._columns.get(stage_id, []))

    def deal(self, deal_id: str) -> Deal | None:
        located = self._locate(deal_id)
        if located is None:
            return None
        stage_id, index = located
        return self._columns[stage_id][index]

    def stage_of(self, deal_id: str) -> str | None:
        located = self._locate(deal_id)
        return located[0] if located else None

    # ── Seeding & Sorting ───────────────────────────────────────────────────

    def seed(
        self,
        by_stage: Mapping[str, list[Deal]],
        stages: list[Stage] | None = None,
    ) -> bool:
        """Rebuild the visual lists from the filter engine's output.

        A seed that arrives mid-gesture is held back and applied when the
        gesture ends. Returns True when applied immediately.
        """
        if self._phase == BoardPhase.DRAGGING:
            self._pending_seed = (by_stage, stages)
            logger.debug(
                "board.seed_deferred",
                deal_id=self._drag.deal_id if self._drag else None,
            )
            return False
        self._apply_seed(by_stage, stages)
        return True

    def set_sort_mode(self, mode: SortMode) -> None:
        self._sort_mode = mode
        if mode != SortMode.MANUAL and self._phase == BoardPhase.IDLE:
            self._columns = {
                stage_id: sort_column(deals, mode)
                for stage_id, deals in self._columns.items()
            }
        logger.info("board.sort_mode_changed", sort_mode=mode.value)

    def cycle_sort_mode(self) -> SortMode:
        """Step manual -> value -> date -> alpha -> manual."""
        index = _SORT_CYCLE.index(self._sort_mode)
        self.set_sort_mode(_SORT_CYCLE[(index + 1) % len(_SORT_CYCLE)])
        return self._sort_mode

    def _apply_seed(
        self,
        by_stage: Mapping[str, list[Deal]],
        stages: list[Stage] | None,
    ) -> None:
        if stages is not None:
            self._stages = list(stages)

        columns: dict[str, list[Deal]] = {stage.id: [] for stage in self._stages}
        for stage_id, deals in by_stage.items():
            columns[stage_id] = [deal.model_copy() for deal in deals]

        # A refresh must not pull an unconfirmed move back to its old column
        for move in self._in_flight.values():
            located = _find(columns, move.deal_id)
            if located is None or located[0] == move.target_stage_id:
                continue
            stage_id, index = located
            deal = columns[stage_id].pop(index)
            deal.stage_id = move.target_stage_id
            columns.setdefault(move.target_stage_id, []).append(deal)

        if self._sort_mode != SortMode.MANUAL:
            columns = {
                stage_id: sort_column(deals, self._sort_mode)
                for stage_id, deals in columns.items()
            }

        self._columns = columns
        logger.debug(
            "board.seeded",
            stage_count=len(columns),
            deal_count=sum(len(deals) for deals in columns.values()),
        )

    # ── Gesture Events ──────────────────────────────────────────────────────

    def on_drag_start(self, deal_id: str) -> DragState:
        """Pick up a deal and enter DRAGGING.

        An unknown id still enters DRAGGING, with a null origin.
        """
        if self._drag is not None:
            logger.warning(
                "board.drag_restarted",
                previous_deal_id=self._drag.deal_id,
                deal_id=deal_id,
            )
            self._abandon(self._drag)

        located = self._locate(deal_id)
        original: Deal | None = None
        if located is not None:
            origin_stage_id, origin_index = located
            original = self._columns[origin_stage_id][origin_index].model_copy()
        elif deal_id in self._columns:
            origin_stage_id, origin_index = deal_id, None
        else:
            origin_stage_id, origin_index = None, None
            logger.debug("board.drag_origin_unresolved", deal_id=deal_id)

        if self._sort_mode != SortMode.MANUAL:
            logger.info("board.sort_mode_suspended", sort_mode=self._sort_mode.value)
            self._sort_mode = SortMode.MANUAL

        self._drag = DragState(
            deal_id=deal_id,
            origin_stage_id=origin_stage_id,
            origin_index=origin_index,
            original=original,
            hover_stage_id=origin_stage_id,
            hover_index=origin_index,
        )
        self._phase = BoardPhase.DRAGGING
        logger.debug(
            "board.drag_started",
            deal_id=deal_id,
            origin_stage_id=origin_stage_id,
        )
        return self._drag

    def on_drag_over(self, over_id: str | None) -> bool:
        """Apply the optimistic move for a hover event.

        Returns True when the board changed.
        """
        drag = self._drag
        if self._phase != BoardPhase.DRAGGING or drag is None:
            logger.debug("board.drag_over_ignored", over_id=over_id)
            return False
        if drag.original is None or over_id is None:
            return False

        target_stage_id = self._resolve_stage(over_id)
        if target_stage_id is None:
            logger.debug("board.drag_target_unresolved", over_id=over_id)
            return False

        key = (self.stage_of(drag.deal_id), target_stage_id, drag.deal_id, over_id)
        if key == drag.last_hover:
            return False

        index = self._move_optimistic(drag.deal_id, target_stage_id, over_id)
        if index is None:
            return False

        drag.hover_stage_id = target_stage_id
        drag.hover_index = index
        drag.last_valid_hover_stage_id = target_stage_id
        drag.last_hover = (target_stage_id, target_stage_id, drag.deal_id, over_id)
        return True

    async def on_drag_end(self, over_id: str | None = None) -> DragOutcome:
        """Finish the gesture and persist the net stage change, if any.

        The transient state is always cleared. A failed move is reported in
        the outcome; it never raises.
        """
        drag = self._drag
        if self._phase != BoardPhase.DRAGGING or drag is None:
            logger.debug("board.drag_end_ignored", over_id=over_id)
            return DragOutcome(result=DragResult.NO_OP)

        target_stage_id = self._resolve_stage(over_id) if over_id else None
        if target_stage_id is None:
            target_stage_id = drag.last_valid_hover_stage_id

        origin_stage_id = drag.origin_stage_id
        if (
            drag.original is None
            or origin_stage_id is None
            or drag.origin_index is None
            or target_stage_id is None
            or target_stage_id == origin_stage_id
        ):
            # Hover events may have left the deal outside its origin column
            if (
                origin_stage_id is not None
                and self.stage_of(drag.deal_id) != origin_stage_id
            ):
                self._abandon(drag)
            self._finish_gesture()
            logger.debug(
                "board.drag_ended_without_move",
                deal_id=drag.deal_id,
                origin_stage_id=origin_stage_id,
                target_stage_id=target_stage_id,
            )
            return DragOutcome(
                result=DragResult.NO_OP,
                deal_id=drag.deal_id,
                from_stage_id=origin_stage_id,
                to_stage_id=target_stage_id,
            )

        # Re-apply in case intermediate hover events were dropped
        if self.stage_of(drag.deal_id) != target_stage_id:
            self._move_optimistic(drag.deal_id, target_stage_id, over_id)

        changed_at = metrics.utcnow()
        board_deal = self.deal(drag.deal_id)
        if board_deal is not None:
            board_deal.stage_changed_at = changed_at

        move = PendingMove(
            deal_id=drag.deal_id,
            origin_stage_id=origin_stage_id,
            origin_index=drag.origin_index,
            target_stage_id=target_stage_id,
            original=drag.original,
        )
        self._in_flight[move.deal_id] = move
        self._finish_gesture()
        logger.info(
            "board.deal_moved",
            deal_id=move.deal_id,
            from_stage_id=origin_stage_id,
            to_stage_id=target_stage_id,
        )

        try:
            result = await self._store.move_to_stage(
                move.deal_id, target_stage_id, changed_at
            )
        finally:
            if self._in_flight.get(move.deal_id) is move:
                del self._in_flight[move.deal_id]

        if result.ok:
            outcome = DragOutcome(
                result=DragResult.MOVED,
                deal_id=move.deal_id,
                from_stage_id=origin_stage_id,
                to_stage_id=target_stage_id,
                celebrated=self._celebrate(move, result.deal),
            )
        else:
            outcome = DragOutcome(
                result=DragResult.FAILED,
                deal_id=move.deal_id,
                from_stage_id=origin_stage_id,
                to_stage_id=target_stage_id,
                rolled_back=self._rollback_on_failure and self._rollback(move),
                error=result.error,
            )

        await self._settle(outcome)
        return outcome

    async def on_drag_cancel(self) -> DragOutcome:
        """Gesture cancelled by the input layer; resolve via the hover fallback."""
        return await self.on_drag_end(None)

    # ── Internals ───────────────────────────────────────────────────────────

    def _locate(self, deal_id: str) -> tuple[str, int] | None:
        return _find(self._columns, deal_id)

    def _resolve_stage(self, target_id: str) -> str | None:
        """A deal id resolves to its containing stage; a stage id to itself."""
        located = self._locate(target_id)
        if located is not None:
            return located[0]
        if target_id in self._columns:
            return target_id
        return None

    def _move_optimistic(
        self,
        deal_id: str,
        target_stage_id: str,
        over_id: str | None,
    ) -> int | None:
        """Move the board copy of a deal into the target column.

        The insertion index is the hovered deal's index, measured before the
        dragged deal is removed, or the end of the column. Returns the index
        the deal ended up at, or None when the deal is not on the board.
        """
        located = self._locate(deal_id)
        if located is None:
            return None
        deal = self._columns[located[0]][located[1]]

        target = self._columns.setdefault(target_stage_id, [])
        index = len(target)
        if over_id is not None:
            for position, candidate in enumerate(target):
                if candidate.id == over_id:
                    index = position
                    break

        # Duplicate guard: drop every occurrence before inserting
        for stage_id, deals in self._columns.items():
            self._columns[stage_id] = [d for d in deals if d.id != deal_id]

        target = self._columns[target_stage_id]
        index = min(index, len(target))
        target.insert(index, deal)
        deal.stage_id = target_stage_id
        return index

    def _place(self, deal: Deal, stage_id: str, index: int) -> None:
        for column_id, deals in self._columns.items():
            self._columns[column_id] = [d for d in deals if d.id != deal.id]
        column = self._columns.setdefault(stage_id, [])
        column.insert(min(index, len(column)), deal)

    def _abandon(self, drag: DragState) -> None:
        """Undo a gesture's optimistic moves without persisting anything."""
        if (
            drag.original is None
            or drag.origin_stage_id is None
            or drag.origin_index is None
            or self._locate(drag.deal_id) is None
        ):
            return
        self._place(drag.original.model_copy(), drag.origin_stage_id, drag.origin_index)

    def _rollback(self, move: PendingMove) -> bool:
        """Return a deal whose move failed to its origin slot."""
        if move.deal_id in self._in_flight:
            # A newer move of the same deal is pending; it owns the position
            return False
        if self.stage_of(move.deal_id) != move.target_stage_id:
            return False
        if move.origin_stage_id not in self._columns:
            return False
        self._place(move.original.model_copy(), move.origin_stage_id, move.origin_index)
        logger.info(
            "board.move_rolled_back",
            deal_id=move.deal_id,
            stage_id=move.origin_stage_id,
        )
        return True

    def _celebrate(self, move: PendingMove, persisted: Deal | None) -> bool:
        stage = next((s for s in self._stages if s.id == move.target_stage_id), None)
        if stage is None or not metrics.is_won_stage(stage, self._won_pattern):
            return False
        deal = persisted or self.deal(move.deal_id) or move.original
        return fire_celebration(self._celebration_hook, deal, stage)

    async def _settle(self, outcome: DragOutcome) -> None:
        if self._on_settled is None:
            return
        try:
            result = self._on_settled(outcome)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning(
                "board.settle_callback_failed",
                deal_id=outcome.deal_id,
                error=str(exc),
                exc_info=True,
            )

    def _finish_gesture(self) -> None:
        self._drag = None
        self._phase = BoardPhase.IDLE
        if self._pending_seed is not None:
            by_stage, stages = self._pending_seed
            self._pending_seed = None
            self._apply_seed(by_stage, stages)


def _find(columns: Mapping[str, list[Deal]], deal_id: str) -> tuple[str, int] | None:
    for stage_id, deals in columns.items():
        for index, deal in enumerate(deals):
            if deal.id == deal_id:
                return stage_id, index
    return None
