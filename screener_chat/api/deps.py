from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from ..core.db import get_db
from ..core.security import decode_token
from ..models import User, Conversation

bearer = HTTPBearer(auto_error=False)

def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None or not creds.credentials:
        raise HTTPException(status_code=401, detail="Missing Authorization Bearer token")
    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("typ") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    user = db.get(User, payload.get("sub"))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.is_disabled:
        raise HTTPException(status_code=403, detail="Account disabled")
    return user

def require_clinician(user: User = Depends(get_current_user)) -> User:
    if not user.is_clinician:
        raise HTTPException(status_code=403, detail="Clinician access required")
    return user

def get_owned_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Conversation:
    # other users' and discarded conversations look the same: not found
    c = db.get(Conversation, conversation_id)
    if not c or c.discarded_at is not None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if c.user_id != user.id and not user.is_clinician:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return c
