"""AI provider client (OpenAI-compatible chat completions API)"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings, AI_CHAT_COMPLETIONS_URL
from app.core.exceptions import AIServiceError

logger = logging.getLogger(__name__)

TUTOR_SYSTEM_PROMPT = (
    "You are a patient tutor. Explain the reasoning step by step and "
    "finish with a short summary the student can review later."
)
DOCUMENT_SYSTEM_PROMPT = (
    "You are a tutor reviewing a student's document. Summarize it, point out "
    "mistakes or unclear passages, and suggest concrete improvements."
)


async def chat_completion(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    max_tokens: Optional[int] = None
) -> Dict[str, Any]:
    """
    Run a chat completion.

    Returns:
        dict with ``answer`` (assistant text), ``model`` (model the provider
        used) and ``usage`` (provider usage object, unmodified)

    Raises:
        AIServiceError: the provider is not configured, unreachable, or returned an error
    """
    if not settings.AI_API_KEY:
        raise AIServiceError("AI provider is not configured")

    payload: Dict[str, Any] = {
        "model": model or settings.AI_DEFAULT_MODEL,
        "messages": messages,
    }
    if max_tokens:
        payload["max_tokens"] = max_tokens

    headers = {
        "Authorization": f"Bearer {settings.AI_API_KEY}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=settings.AI_REQUEST_TIMEOUT) as client:
            response = await client.post(AI_CHAT_COMPLETIONS_URL, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"AI provider returned {e.response.status_code}: {e.response.text[:500]}")
        raise AIServiceError("AI provider returned an error", status_code=e.response.status_code)
    except httpx.TimeoutException:
        logger.error(f"AI provider timed out after {settings.AI_REQUEST_TIMEOUT}s")
        raise AIServiceError("AI provider timed out")
    except httpx.RequestError as e:
        logger.error(f"AI provider request failed: {e}")
        raise AIServiceError("AI provider is unreachable")

    choices = data.get("choices") or []
    if not choices:
        raise AIServiceError("AI provider returned no answer")

    answer = (choices[0].get("message") or {}).get("content") or ""
    return {
        "answer": answer,
        "model": data.get("model") or payload["model"],
        "usage": data.get("usage") or {},
    }


async def ask_question(question: str, subject: Optional[str] = None, model: Optional[str] = None) -> Dict[str, Any]:
    """Answer a single tutoring question"""
    prompt = f"Subject: {subject}\n\n{question}" if subject else question
    return await chat_completion(
        [
            {"role": "system", "content": TUTOR_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        model=model,
    )


async def send_chat_message(
    message: str,
    history: Optional[List[Dict[str, str]]] = None,
    model: Optional[str] = None
) -> Dict[str, Any]:
    """Continue a tutoring conversation"""
    messages = [{"role": "system", "content": TUTOR_SYSTEM_PROMPT}]
    messages.extend(history or [])
    messages.append({"role": "user", "content": message})
    return await chat_completion(messages, model=model)


async def analyze_document(
    content: str,
    instructions: Optional[str] = None,
    model: Optional[str] = None
) -> Dict[str, Any]:
    """Review a document the student submitted"""
    prompt = content if not instructions else f"{instructions}\n\n---\n\n{content}"
    return await chat_completion(
        [
            {"role": "system", "content": DOCUMENT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        model=model,
    )
