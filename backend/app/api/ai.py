"""AI tutoring API routes (credit-gated)"""
import uuid
from typing import Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from app.core.security import get_optional_user_id, get_client_ip
from app.db.session import get_db
from app.schemas.ai import AskQuestionRequest, ChatMessageRequest, DocumentAnalysisRequest
from app.services import ai_service
from app.services.credit_pipeline import run_with_credits, RequestMeta

router = APIRouter(prefix="/api/ai", tags=["ai"])


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        endpoint=request.url.path,
        method=request.method,
    )


def _model_for(context, requested: Optional[str]) -> Optional[str]:
    return context.model_name if context else requested


@router.post("/questions")
async def ask_question(
    request_data: AskQuestionRequest,
    request: Request,
    session_user_id: Optional[int] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """Ask the AI tutor a question"""
    question_id = request_data.request_id or str(uuid.uuid4())

    async def handler(context):
        result = await ai_service.ask_question(
            request_data.question,
            subject=request_data.subject,
            model=_model_for(context, request_data.model),
        )
        return {
            "success": True,
            "data": {
                "questionId": question_id,
                "question": request_data.question,
                "answer": result["answer"],
                "model": result["model"],
                "usage": result["usage"],
            },
        }

    return await run_with_credits(
        "ai.ask_question",
        handler,
        db,
        session_user_id=session_user_id,
        body_user_id=request_data.user_id,
        model_name=request_data.model,
        request_meta=_request_meta(request),
        reference_id=question_id,
        reference_type="question",
    )


@router.post("/chat")
async def send_chat_message(
    request_data: ChatMessageRequest,
    request: Request,
    session_user_id: Optional[int] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """Send a message in a tutoring conversation"""
    message_id = request_data.request_id or str(uuid.uuid4())
    conversation_id = request_data.conversation_id or str(uuid.uuid4())

    async def handler(context):
        result = await ai_service.send_chat_message(
            request_data.message,
            history=[turn.model_dump() for turn in request_data.history],
            model=_model_for(context, request_data.model),
        )
        return {
            "success": True,
            "data": {
                "id": message_id,
                "conversationId": conversation_id,
                "reply": result["answer"],
                "model": result["model"],
                "usage": result["usage"],
            },
        }

    return await run_with_credits(
        "ai.chat_message",
        handler,
        db,
        session_user_id=session_user_id,
        body_user_id=request_data.user_id,
        model_name=request_data.model,
        request_meta=_request_meta(request),
        reference_id=message_id,
        reference_type="ai_response",
    )


@router.post("/documents/analyze")
async def analyze_document(
    request_data: DocumentAnalysisRequest,
    request: Request,
    session_user_id: Optional[int] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    """Have the AI tutor review a document"""
    analysis_id = request_data.request_id or str(uuid.uuid4())

    async def handler(context):
        result = await ai_service.analyze_document(
            request_data.content,
            instructions=request_data.instructions,
            model=_model_for(context, request_data.model),
        )
        return {
            "success": True,
            "data": {
                "id": analysis_id,
                "analysis": result["answer"],
                "model": result["model"],
                "usage": result["usage"],
            },
        }

    return await run_with_credits(
        "ai.analyze_document",
        handler,
        db,
        session_user_id=session_user_id,
        body_user_id=request_data.user_id,
        model_name=request_data.model,
        request_meta=_request_meta(request),
        reference_id=analysis_id,
        reference_type="ai_response",
    )
