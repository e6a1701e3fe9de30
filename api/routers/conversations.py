from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from api.middleware.rate_limiter import client_id
from api.models import ConversationResponse, TurnRequest, TurnResponse, UsageResponse
from api.orchestrators.turn_orchestrator import TurnOrchestrator

logger = structlog.get_logger(__name__)
router = APIRouter()


def get_turn_orchestrator(request: Request) -> TurnOrchestrator:
    """Orchestrator created by the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error_code": "NOT_READY", "message": "Service is starting up."},
        )
    return orchestrator


@router.post("/v1/conversations/{conversation_id}/turns", response_model=TurnResponse, tags=["Conversations"])
async def create_turn(
    conversation_id: str,
    turn_request: TurnRequest,
    request: Request,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> TurnResponse:
    """Ask a question within a conversation.

    The conversation is created on first use. Validation errors return 400,
    rate limit rejections 429 (with ``Retry-After``) and a saturated service
    503; every other outcome is a 200 with the answer text.

    Example:
        ```bash
        curl -X POST http://localhost:8000/api/v1/conversations/abc/turns \\
          -H "Content-Type: application/json" \\
          -d '{"question": "Aký trest hrozí za krádež?"}'
        ```
    """
    result = await orchestrator.handle_turn_detailed(
        conversation_id,
        turn_request.question,
        user_id=client_id(request, turn_request.user_id),
    )
    return TurnResponse(
        conversation_id=conversation_id,
        answer=result.answer,
        outcome=result.outcome,
        processing_time_ms=result.processing_time_ms,
    )


@router.get("/v1/conversations/{conversation_id}", response_model=ConversationResponse, tags=["Conversations"])
async def get_conversation(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> ConversationResponse:
    """Return the stored state of a conversation (404 if unknown)."""
    state = orchestrator.store.snapshot(conversation_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "CONVERSATION_NOT_FOUND", "message": "Conversation not found."},
        )
    return ConversationResponse(
        conversation_id=conversation_id,
        history=[m.model_dump() for m in state.history],
        previous_questions=state.previous_questions,
        last_response=state.last_response,
        summary=state.context.summary,
        key_points=state.context.key_points,
        timestamp=state.timestamp,
    )


@router.delete("/v1/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Conversations"])
async def delete_conversation(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> None:
    """Forget a conversation. Deleting an unknown conversation is not an error."""
    async with orchestrator.store.lock(conversation_id):
        orchestrator.clear(conversation_id)


@router.get("/v1/conversations/{conversation_id}/usage", response_model=UsageResponse, tags=["Conversations"])
async def get_usage(
    conversation_id: str,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
) -> UsageResponse:
    summary = orchestrator.usage_tracker.summary(conversation_id)
    return UsageResponse(conversation_id=conversation_id, **summary)
