"""
HTTP API.

- Totem routes: one-shot questions, predefined question catalog, provider health
- Session read API: live sessions and their observability events
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from logging_setup import get_logger, Component
from observability.event_store import event_store
from .services import Services
from .session import SessionState
from .totem_service import QuestionResult

logger = get_logger(Component.SERVER)

totem_router = APIRouter(prefix="/api/totem", tags=["totem"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])

INTERNAL_ERROR = {
    "success": False,
    "error": "Error interno del servidor",
    "text": "Lo siento, ocurrió un error inesperado.",
}


def get_services(request: Request) -> Services:
    return request.app.state.services


class QuestionRequest(BaseModel):
    question: Optional[str] = None
    filter: Optional[str] = None
    prompt: Optional[str] = None


def _result_response(result: QuestionResult, **extra: Any) -> JSONResponse:
    if not result.success:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": result.error, "text": result.text},
        )
    content = {
        "success": True,
        "text": result.text,
        "audioUrl": result.audio_url,
        "searchResults": result.search_results,
        "usage": result.usage,
        "warning": result.warning,
    }
    content.update(extra)
    return JSONResponse(content=content)


# --- Totem API ---


@totem_router.post("/question")
async def process_question(req: QuestionRequest, services: Services = Depends(get_services)):
    """Answer a free-text question with text and audio."""
    if not req.question or not req.question.strip():
        return JSONResponse(status_code=400, content={"success": False, "error": "La pregunta es requerida"})

    logger.info("Processing question", question_length=len(req.question))
    try:
        result = await services.totem.process_question(req.question, req.filter, req.prompt)
    except Exception as e:
        logger.exception("Question processing failed", error_type=type(e).__name__)
        return JSONResponse(status_code=500, content=INTERNAL_ERROR)
    return _result_response(result)


@totem_router.get("/questions")
async def get_predefined_questions(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {
        "success": True,
        "questions": [q.to_dict() for q in services.totem.get_predefined_questions()],
    }


@totem_router.post("/questions/{question_id}")
async def process_predefined_question(question_id: str, services: Services = Depends(get_services)):
    """Answer a catalog question, using its own prompt when it has one."""
    predefined = services.totem.get_predefined_question(question_id)
    if predefined is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Pregunta predefinida no encontrada"})

    logger.info("Processing predefined question", question_id=question_id)
    try:
        result = await services.totem.process_question(predefined.question, None, predefined.prompt)
    except Exception as e:
        logger.exception("Predefined question failed", error_type=type(e).__name__)
        return JSONResponse(status_code=500, content=INTERNAL_ERROR)
    return _result_response(result, predefinedQuestion=predefined.to_dict())


@totem_router.get("/health")
async def totem_health(services: Services = Depends(get_services)):
    """Configuration check plus a live probe of every provider."""
    config_validation = services.pipeline_config.validation_summary()
    service_validation = await services.totem.validate_services()
    overall = bool(config_validation["isValid"]) and all(service_validation.values())

    return JSONResponse(
        status_code=200 if overall else 503,
        content={
            "success": overall,
            "health": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "config": config_validation,
                "services": service_validation,
                "overall": overall,
            },
        },
    )


# --- Session read API ---


def _parse_timestamp(value: Optional[str], name: str) -> Optional[datetime]:
    """ISO timestamp; a URL-decoded '+' may arrive as a space; no offset means UTC."""
    if not value:
        return None
    try:
        cleaned = value.replace(" ", "+").replace("Z", "+00:00")
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@sessions_router.get("")
async def list_sessions(
    state: Optional[str] = Query(None, description="Filter by state (connected, closed)"),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    state_filter: Optional[SessionState] = None
    if state:
        try:
            state_filter = SessionState(state.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid state: {state}")
    return [s.summary() for s in services.sessions.list_sessions(state=state_filter)]


@sessions_router.get("/{session_id}/events")
async def get_session_events(
    session_id: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> Dict[str, Any]:
    """
    Events stay queryable after the session closes, until the store evicts them.
    """
    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        since=_parse_timestamp(since, "since"),
        until=_parse_timestamp(until, "until"),
        limit=limit,
    )
    if not events:
        raise HTTPException(status_code=404, detail="No events for session")
    return {"session_id": session_id, "events": events, "count": len(events)}
