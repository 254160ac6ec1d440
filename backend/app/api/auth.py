"""Auth API routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session
from app.schemas.auth import RegisterRequest, LoginRequest
from app.services.auth_service import register_user, login_user, logout_user, get_current_user_from_session
from app.core.security import set_auth_cookie, SESSION_COOKIE
from app.db.session import get_db

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/register")
def register(request_data: RegisterRequest, response: Response, db: Session = Depends(get_db)):
    """Create an account (with signup bonus credits) and log in"""
    try:
        result = register_user(request_data.email, request_data.password, db)
        set_auth_cookie(response, result["session_id"])
        return {"user": result["user"], "credits": result["credits"]}
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.post("/login")
def login(request_data: LoginRequest, response: Response, db: Session = Depends(get_db)):
    """Login user"""
    try:
        result = login_user(request_data.email, request_data.password, db)
        set_auth_cookie(response, result["session_id"])
        return {"user": result["user"]}
    except ValueError as e:
        raise HTTPException(401, str(e))


@router.post("/logout")
def logout(request: Request, response: Response):
    """Logout user"""
    session_id = request.cookies.get(SESSION_COOKIE)
    result = logout_user(session_id)
    if session_id:
        response.delete_cookie(SESSION_COOKIE)
    return result


@router.get("/me")
def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Get current logged-in user"""
    try:
        return get_current_user_from_session(request.cookies.get(SESSION_COOKIE), db)
    except Exception as e:
        logger.warning(f"Could not resolve current user: {e}")
        return {"user": None}
