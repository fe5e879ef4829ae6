import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.application.services.thread_chain_service import ThreadChainService
from app.core.security import decode_token
from app.infrastructure.db.session import get_db
from app.integrations.threads.publisher import ThreadsPublisher

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    try:
        claims = decode_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if claims.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")

    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return user_id


def get_threads_publisher() -> ThreadsPublisher:
    return ThreadsPublisher()


def get_thread_chain_service(
    db: Session = Depends(get_db),
    publisher: ThreadsPublisher = Depends(get_threads_publisher),
) -> ThreadChainService:
    return ThreadChainService(db, publisher)
