from fastapi import APIRouter, Depends, Query, Request, Response

from medquiz.core.auth import current_learner_id
from medquiz.core.logging import DOMAIN_SESSION, get_domain_logger
from medquiz.engine.errors import InvalidTransition
from medquiz.engine.types import QuizSettings
from medquiz.runtime.session_manager import QuizSession, SessionManager
from medquiz.runtime.views import build_results, build_review, build_session_view
from medquiz.schemas.session import (
    JumpRequest,
    Language,
    ProgressRecordView,
    RestoreDecisionRequest,
    ResultsView,
    ReviewView,
    SelectOptionRequest,
    SessionSettingsRequest,
    SessionView,
    StartSessionRequest,
)

router = APIRouter(tags=["sessions"])
logger = get_domain_logger(__name__, DOMAIN_SESSION)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


async def _session(
    session_id: str,
    learner_id: str,
    manager: SessionManager,
) -> QuizSession:
    return await manager.get(session_id, learner_id)


@router.post("/sessions", response_model=SessionView)
async def start_session(
    payload: StartSessionRequest,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await manager.start(learner_id, payload.course_id, payload.unit_filter)
    return build_session_view(session)


@router.post("/sessions/{session_id}/settings", response_model=SessionView)
async def configure_session(
    session_id: str,
    payload: SessionSettingsRequest,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await manager.configure(
        session,
        QuizSettings(
            reveal_answers_immediately=payload.reveal_answers_immediately,
            time_limit_seconds=payload.time_limit_seconds,
        ),
    )
    return build_session_view(session)


@router.post("/sessions/{session_id}/restore", response_model=SessionView)
async def decide_restore(
    session_id: str,
    payload: RestoreDecisionRequest,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.decide_restore(payload.resume)
    return build_session_view(session)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(
    session_id: str,
    lang: Language = Query(default="en"),
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    return build_session_view(session, lang)


@router.post("/sessions/{session_id}/select", response_model=SessionView)
async def select_option(
    session_id: str,
    payload: SelectOptionRequest,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.select_option(payload.question_id, payload.option_id)
    return build_session_view(session)


@router.post("/sessions/{session_id}/submit", response_model=SessionView)
async def submit_unit(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.submit()
    return build_session_view(session)


@router.post("/sessions/{session_id}/advance", response_model=SessionView)
async def advance(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.advance()
    return build_session_view(session)


@router.post("/sessions/{session_id}/retreat", response_model=SessionView)
async def retreat(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.retreat()
    return build_session_view(session)


@router.post("/sessions/{session_id}/jump", response_model=SessionView)
async def jump(
    session_id: str,
    payload: JumpRequest,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.jump_to(payload.unit_index)
    return build_session_view(session)


@router.post("/sessions/{session_id}/bookmark", response_model=SessionView)
async def toggle_bookmark(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.toggle_bookmark()
    return build_session_view(session)


@router.post("/sessions/{session_id}/pause", response_model=SessionView)
async def toggle_pause(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.toggle_pause()
    return build_session_view(session)


@router.post("/sessions/{session_id}/retry", response_model=SessionView)
async def start_retry(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.start_retry()
    return build_session_view(session)


@router.post("/sessions/{session_id}/restart", response_model=SessionView)
async def restart(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    await session.restart()
    return build_session_view(session)


@router.post("/sessions/{session_id}/hide", status_code=202)
async def hide(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    session.hide()
    return {"session_id": session_id, "flushed": True}


@router.delete("/sessions/{session_id}", status_code=204)
async def exit_session(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    await manager.close(session_id, learner_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/results", response_model=ResultsView)
async def results(
    session_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    return build_results(session)


@router.get("/sessions/{session_id}/review", response_model=ReviewView)
async def review(
    session_id: str,
    lang: Language = Query(default="en"),
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    session = await _session(session_id, learner_id, manager)
    if not session.state.completed:
        raise InvalidTransition("Review is available once the attempt is completed", phase=session.machine.phase.value)
    return build_review(session, lang)


@router.get("/progress/incomplete", response_model=list[ProgressRecordView])
async def incomplete_progress(
    limit: int | None = Query(default=None, ge=1, le=50),
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    records = await manager.incomplete_for(learner_id, limit)
    return [ProgressRecordView.model_validate(record.model_dump()) for record in records]


@router.get("/progress/completed/{course_id}", response_model=ProgressRecordView | None)
async def completed_progress(
    course_id: str,
    learner_id: str = Depends(current_learner_id),
    manager: SessionManager = Depends(get_session_manager),
):
    record = await manager.completed_for(learner_id, course_id)
    if record is None:
        return None
    return ProgressRecordView.model_validate(record.model_dump())
