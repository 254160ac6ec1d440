"""Pydantic schemas for AI tutoring operations

``user_id`` lets trusted callers (e.g. a server-side integration) name the
account to charge when there is no session cookie. ``request_id`` is the
client's id for the operation; it is charged once, and a request reusing
an id that was already charged is rejected with 409 before the AI runs.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal


class AiRequestBase(BaseModel):
    model: Optional[str] = None
    user_id: Optional[int] = None
    request_id: Optional[str] = Field(None, max_length=100)


class AskQuestionRequest(AiRequestBase):
    question: str = Field(..., min_length=1, max_length=10000)
    subject: Optional[str] = Field(None, max_length=200)


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatMessageRequest(AiRequestBase):
    message: str = Field(..., min_length=1, max_length=10000)
    conversation_id: Optional[str] = Field(None, max_length=100)
    history: List[ChatTurn] = Field(default_factory=list, max_length=50)


class DocumentAnalysisRequest(AiRequestBase):
    content: str = Field(..., min_length=1, max_length=200000)
    instructions: Optional[str] = Field(None, max_length=2000)
