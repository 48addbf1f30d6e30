"""Pipeline board module -- stage catalog, deal store, filter engine and drag-and-drop board.

Provides SQLAlchemy models (DealStageModel, DealModel), Pydantic schemas
(Deal, Stage, FilterSet, ViewState, PipelineView), repositories for async
persistence, the pure filter/aggregation engine, the BoardController drag
state machine, CSV export, and PipelineService which wires them together.
"""
