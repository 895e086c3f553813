from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.db import engine, Base
from .core.logging_config import configure_logging
from .api.routes.conversations import router as conversations_router
from .api.routes.crisis_events import router as crisis_events_router
from .api.routes.misc import router as misc_router

configure_logging()

app = FastAPI(title="Screener Chat Service", version=settings.API_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)

app.include_router(misc_router)
app.include_router(conversations_router)
app.include_router(crisis_events_router)
