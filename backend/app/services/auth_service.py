"""Authentication service - accounts and Redis-backed sessions"""
import bcrypt
import logging
import secrets
from typing import Optional
from sqlalchemy.orm import Session

from app.models.user import User
from app.core.metrics import login_attempts_counter
from app.db.redis import set_session, delete_session, get_session
from app.services.credit_service import allocate_signup_bonus, get_credit_balance

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    if not password_hash or not password:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "is_admin": user.is_admin,
    }


def create_user(email: str, password: str, db: Session, is_admin: bool = False) -> User:
    """Create a user and grant the signup bonus.

    Raises:
        ValueError: email already registered
    """
    if get_user_by_email(email, db):
        raise ValueError("Email already registered")

    user = User(email=email, password_hash=hash_password(password), is_admin=is_admin)
    db.add(user)
    db.commit()
    db.refresh(user)

    allocate_signup_bonus(user.id, db)
    logger.info(f"User created: {email} (ID: {user.id})")
    return user


def authenticate_user(email: str, password: str, db: Session) -> Optional[User]:
    """Authenticate a user by email and password"""
    user = get_user_by_email(email, db)
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def create_session(user_id: int) -> str:
    """Create a new session for a user and return its id"""
    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user_id)
    return session_id


def register_user(email: str, password: str, db: Session) -> dict:
    """Registration flow: validate, create the account with its signup bonus, open a session

    Raises:
        ValueError: password too short or email already registered
    """
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters long")

    user = create_user(email, password, db)
    session_id = create_session(user.id)

    return {
        "user": serialize_user(user),
        "credits": get_credit_balance(user.id, db),
        "session_id": session_id,
    }


def login_user(email: str, password: str, db: Session) -> dict:
    """Login flow: authenticate, create session, return user info

    Raises:
        ValueError: invalid credentials
    """
    user = authenticate_user(email, password, db)
    if not user:
        login_attempts_counter.labels(status="failure").inc()
        raise ValueError("Invalid email or password")

    session_id = create_session(user.id)
    login_attempts_counter.labels(status="success").inc()
    logger.info(f"User logged in: {user.email} (ID: {user.id})")

    return {
        "user": serialize_user(user),
        "session_id": session_id,
    }


def logout_user(session_id: Optional[str]) -> dict:
    """Logout flow: delete session"""
    if session_id:
        delete_session(session_id)
        logger.info(f"User logged out (session: {session_id[:16]}...)")

    return {"message": "Logged out successfully"}


def get_current_user_from_session(session_id: Optional[str], db: Session) -> dict:
    """User (with credit balance) for a session id, or ``{"user": None}``"""
    if not session_id:
        return {"user": None}

    user_id = get_session(session_id)
    if not user_id:
        return {"user": None}

    user = get_user_by_id(user_id, db)
    if not user:
        return {"user": None}

    return {
        "user": serialize_user(user),
        "credits": get_credit_balance(user.id, db),
    }
