from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from medquiz.api.events import router as events_router
from medquiz.api.health import router as health_router
from medquiz.api.metrics import router as metrics_router
from medquiz.api.sessions import router as sessions_router
from medquiz.content.loader import QuestionBankLoader
from medquiz.core.auth import api_key_auth_middleware
from medquiz.core.bootstrap import initialize_database
from medquiz.core.errors import (
    http_exception_handler,
    quiz_engine_exception_handler,
    request_id_middleware,
    unhandled_exception_handler,
    validation_exception_handler,
)
from medquiz.core.event_bus import event_bus
from medquiz.core.logging import configure_logging
from medquiz.core.settings import settings
from medquiz.engine.errors import QuizEngineError
from medquiz.engine.store import ProgressStore
from medquiz.memory.database import SessionLocal, engine
from medquiz.memory.local_cache import LocalFallbackCache
from medquiz.runtime.registry import SessionRegistry
from medquiz.runtime.session_manager import SessionManager


configure_logging(settings.log_level)

app = FastAPI(title="MedQuiz API", version="0.1.0")
app.include_router(health_router)
app.include_router(sessions_router)
app.include_router(events_router)
app.include_router(metrics_router)
app.middleware("http")(api_key_auth_middleware)
app.middleware("http")(request_id_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(QuizEngineError, quiz_engine_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


@app.on_event("startup")
async def on_startup():
    await initialize_database(engine)
    app.state.session_manager = SessionManager(
        QuestionBankLoader(SessionLocal),
        ProgressStore(SessionLocal),
        LocalFallbackCache(),
        SessionRegistry(),
        events=event_bus,
    )
    app.state.session_manager.reaper.start()


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.session_manager.close_all()
