from fastapi import APIRouter
from ...core.config import settings
from ...screeners.loader import load_screeners

router = APIRouter(tags=["misc"])

@router.get("/health")
def health():
    return {"ok": True}

@router.get("/version")
def version():
    return {"version": settings.API_VERSION, "env": settings.APP_ENV}

@router.get("/screeners")
def screeners():
    return [
        {"id": s.id, "name": s.name, "shortName": s.short_name, "totalQuestions": s.total_questions, "scale": s.scale}
        for s in load_screeners().values()
    ]
