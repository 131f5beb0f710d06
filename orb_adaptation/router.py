"""
Orb Adaptation: API Router

FastAPI routes through which dashboards and other collaborators emit
events, read aggregates and decide on learning actions.

Mount with:
    app.include_router(create_router(components.engine, components.workflow))

Error mapping:
- ValidationError -> 422
- InvalidTransitionError -> 409
- LearningActionNotFoundError / unknown pattern -> 404
- StorageError -> 503
"""

import logging
from dataclasses import replace
from typing import Optional, Dict, List, Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from .adaptation_engine import AdaptationEngine
from .errors import (
    AdaptationError,
    ValidationError,
    StorageError,
    InvalidTransitionError,
    LearningActionNotFoundError,
)
from .learning_actions import LearningActionWorkflow
from .learning_model import (
    PatternFilter,
    InsightFilter,
    LearningActionFilter,
)

logger = logging.getLogger("adaptation_router")


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class DecisionRequest(BaseModel):
    """Approve/reject body."""
    user_id: Optional[str] = Field(None, description="Who made the decision")
    reason: Optional[str] = Field(None, description="Free-text justification")


class PatternStatusRequest(BaseModel):
    status: str = Field(..., description="validated, applied or rejected")


class LearningRunRequest(BaseModel):
    filter: Optional[Dict[str, Any]] = Field(None, description="Event filter (wire names)")
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    min_occurrences: Optional[int] = Field(None, ge=1)
    pattern_types: Optional[List[str]] = None


# -----------------------------------------------------------------------------
# Error Mapping
# -----------------------------------------------------------------------------
def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, LearningActionNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageError):
        logger.error(f"Storage failure: {exc}")
        return HTTPException(status_code=503, detail="Storage unavailable")
    return HTTPException(status_code=500, detail=str(exc))


def _event_filter(**params: Any) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


# -----------------------------------------------------------------------------
# Router Factory
# -----------------------------------------------------------------------------
def create_router(
    engine: AdaptationEngine,
    workflow: LearningActionWorkflow,
) -> APIRouter:
    """Build the /adaptation router bound to one engine and workflow."""
    router = APIRouter(prefix="/adaptation", tags=["Adaptation"])
    bus = engine.event_bus
    store = workflow.store

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @router.post("/events", status_code=201)
    async def emit_event(event: Dict[str, Any]):
        """Validate and record one event."""
        try:
            stored = bus.emit(event)
        except AdaptationError as e:
            raise _http_error(e)
        return stored.to_dict()

    @router.get("/events")
    async def query_events(
        type: Optional[List[str]] = Query(None),
        user_id: Optional[str] = Query(None, alias="userId"),
        session_id: Optional[str] = Query(None, alias="sessionId"),
        device_id: Optional[str] = Query(None, alias="deviceId"),
        mode: Optional[str] = Query(None),
        role: Optional[str] = Query(None),
        date_from: Optional[str] = Query(None, alias="dateFrom"),
        date_to: Optional[str] = Query(None, alias="dateTo"),
        search: Optional[str] = Query(None),
        limit: Optional[int] = Query(None, ge=1, le=1000),
    ):
        """Events matching the filter, newest first."""
        event_filter = _event_filter(
            type=type, userId=user_id, sessionId=session_id, deviceId=device_id,
            mode=mode, role=role, dateFrom=date_from, dateTo=date_to,
            search=search, limit=limit,
        )
        try:
            events = bus.query(event_filter)
        except AdaptationError as e:
            raise _http_error(e)
        return {"events": [e.to_dict() for e in events], "count": len(events)}

    @router.get("/events/stats")
    async def event_stats(
        type: Optional[List[str]] = Query(None),
        user_id: Optional[str] = Query(None, alias="userId"),
        device_id: Optional[str] = Query(None, alias="deviceId"),
        mode: Optional[str] = Query(None),
        role: Optional[str] = Query(None),
        date_from: Optional[str] = Query(None, alias="dateFrom"),
        date_to: Optional[str] = Query(None, alias="dateTo"),
    ):
        event_filter = _event_filter(
            type=type, userId=user_id, deviceId=device_id, mode=mode,
            role=role, dateFrom=date_from, dateTo=date_to,
        )
        try:
            return bus.get_stats(event_filter).to_dict()
        except AdaptationError as e:
            raise _http_error(e)

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    @router.get("/insights/computed")
    async def computed_insights(
        user_id: Optional[str] = Query(None, alias="userId"),
        mode: Optional[str] = Query(None),
    ):
        try:
            return engine.compute_insights(_event_filter(userId=user_id, mode=mode)).to_dict()
        except AdaptationError as e:
            raise _http_error(e)

    @router.get("/recommendations")
    async def recommendations(
        user_id: Optional[str] = Query(None, alias="userId"),
        mode: Optional[str] = Query(None),
    ):
        try:
            items = engine.get_recommendations(_event_filter(userId=user_id, mode=mode))
        except AdaptationError as e:
            raise _http_error(e)
        return {"recommendations": items, "count": len(items)}

    @router.get("/adjustments")
    async def adjustments(user_id: Optional[str] = Query(None, alias="userId")):
        """Recompute advisory adjustments."""
        try:
            return engine.compute_adjustments(_event_filter(userId=user_id)).to_dict()
        except AdaptationError as e:
            raise _http_error(e)

    @router.get("/modes/{mode}/suggestions")
    async def mode_suggestions(mode: str):
        try:
            items = engine.get_mode_suggestions(mode)
        except AdaptationError as e:
            raise _http_error(e)
        return {"mode": mode, "suggestions": items}

    # -------------------------------------------------------------------------
    # Learning Records
    # -------------------------------------------------------------------------

    @router.get("/patterns")
    async def list_patterns(
        type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        min_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
        limit: int = Query(100, ge=1, le=1000),
    ):
        try:
            patterns = store.get_patterns(PatternFilter(
                type=type, status=status, min_confidence=min_confidence, limit=limit,
            ))
        except AdaptationError as e:
            raise _http_error(e)
        return {"patterns": [p.to_dict() for p in patterns], "count": len(patterns)}

    @router.post("/patterns/{pattern_id}/status")
    async def advance_pattern(pattern_id: str, request: PatternStatusRequest):
        try:
            pattern = workflow.advance_pattern(pattern_id, request.status)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Pattern '{pattern_id}' not found")
        except AdaptationError as e:
            raise _http_error(e)
        return pattern.to_dict()

    @router.get("/insights")
    async def list_insights(
        pattern_id: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        min_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
        limit: int = Query(100, ge=1, le=1000),
    ):
        try:
            insights = store.get_insights(InsightFilter(
                pattern_id=pattern_id, type=type, status=status,
                min_confidence=min_confidence, limit=limit,
            ))
        except AdaptationError as e:
            raise _http_error(e)
        return {"insights": [i.to_dict() for i in insights], "count": len(insights)}

    @router.get("/actions")
    async def list_actions(
        insight_id: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        min_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
        limit: int = Query(100, ge=1, le=1000),
    ):
        try:
            actions = store.get_learning_actions(LearningActionFilter(
                insight_id=insight_id, type=type, status=status,
                min_confidence=min_confidence, limit=limit,
            ))
        except AdaptationError as e:
            raise _http_error(e)
        return {"actions": [a.to_dict() for a in actions], "count": len(actions)}

    @router.post("/actions/{action_id}/approve")
    async def approve_action(action_id: str, request: Optional[DecisionRequest] = None):
        request = request or DecisionRequest()
        try:
            action = workflow.approve(action_id, user_id=request.user_id, reason=request.reason)
        except AdaptationError as e:
            raise _http_error(e)
        return action.to_dict()

    @router.post("/actions/{action_id}/reject")
    async def reject_action(action_id: str, request: Optional[DecisionRequest] = None):
        request = request or DecisionRequest()
        try:
            action = workflow.reject(action_id, user_id=request.user_id, reason=request.reason)
        except AdaptationError as e:
            raise _http_error(e)
        return action.to_dict()

    @router.get("/actions/{action_id}/history")
    async def action_history(action_id: str):
        try:
            records = workflow.get_history(action_id)
        except AdaptationError as e:
            raise _http_error(e)
        return {"action_id": action_id, "history": [r.to_dict() for r in records]}

    # -------------------------------------------------------------------------
    # Learning Cycle
    # -------------------------------------------------------------------------

    @router.post("/learning/run")
    async def run_learning(request: Optional[LearningRunRequest] = None):
        """Run one learning cycle over the matching events."""
        request = request or LearningRunRequest()
        overrides = {
            key: value
            for key, value in (
                ("min_confidence", request.min_confidence),
                ("min_occurrences", request.min_occurrences),
                ("pattern_types", request.pattern_types),
            )
            if value is not None
        }
        options = replace(engine.detection_options, **overrides)
        try:
            result = engine.run_learning_cycle(request.filter, options=options)
        except AdaptationError as e:
            raise _http_error(e)
        return result.to_dict()

    return router
