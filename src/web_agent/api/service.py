"""HTTP service exposing the agent loop to a presentation layer."""

from __future__ import annotations

import base64
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..config import load_config
from ..chat.service import ChatTurn, PageAnswerResult
from ..errors import ChatError, RunStateError, SessionNotFoundError
from ..factory import build_orchestrator
from ..models import ActionDescriptor, FailureCause, MessageEvent, RunResult, RunState
from ..orchestrator.runner import Orchestrator
from .worker import RunWorker

app = FastAPI(title="Web Agent")


# Pydantic request/response models --------------------------------------------


class RunCreateRequest(BaseModel):
    goal: str = Field(min_length=1)
    session_id: Optional[str] = None


class FollowUpRequest(BaseModel):
    goal: str = Field(min_length=1)
    prior_messages: List[MessageEvent] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    index: int = Field(ge=0)


class RunSummaryModel(BaseModel):
    id: str
    session_id: str
    goal: str
    state: RunState
    created_at: datetime
    finished_at: Optional[datetime]


class RunDetailModel(RunSummaryModel):
    success: bool
    message: Optional[str]
    cause: Optional[FailureCause]
    live_view_url: Optional[str]
    history: List[Dict[str, Any]]
    messages: List[MessageEvent]
    choices: List[ActionDescriptor]


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)
    history: List[ChatTurn] = Field(default_factory=list)


class TerminateResponse(BaseModel):
    success: bool
    screenshot: Optional[str] = None


# Service state ----------------------------------------------------------------


def _default_orchestrator() -> Orchestrator:
    return build_orchestrator(load_config())


DEFAULT_MAX_FINISHED_RUNS = 100


class ServiceState:
    def __init__(
        self,
        orchestrator_factory: Callable[[], Orchestrator] = _default_orchestrator,
        *,
        max_finished_runs: int = DEFAULT_MAX_FINISHED_RUNS,
    ) -> None:
        self._orchestrator_factory = orchestrator_factory
        self._max_finished_runs = max_finished_runs
        self._orchestrator: Optional[Orchestrator] = None
        self._runs: Dict[str, RunWorker] = {}
        self._lock = threading.Lock()

    @property
    def orchestrator(self) -> Orchestrator:
        with self._lock:
            if self._orchestrator is None:
                self._orchestrator = self._orchestrator_factory()
            return self._orchestrator

    def list_runs(self) -> List[RunResult]:
        with self._lock:
            workers = list(self._runs.values())
        return [worker.snapshot() for worker in workers]

    def get_run(self, run_id: str) -> RunWorker:
        with self._lock:
            if run_id not in self._runs:
                raise KeyError(run_id)
            return self._runs[run_id]

    def start_run(
        self,
        goal: str,
        *,
        session_id: Optional[str] = None,
        prior_messages: Optional[List[MessageEvent]] = None,
    ) -> RunWorker:
        orchestrator = self.orchestrator
        run = orchestrator.new_run(goal, session_id=session_id, prior_messages=prior_messages)
        worker = RunWorker(orchestrator, run)
        with self._lock:
            self._evict_finished()
            self._runs[worker.run_id] = worker
        worker.start()
        return worker

    def _evict_finished(self) -> None:
        # Oldest first; suspended and running workers are never dropped.
        finished = [run_id for run_id, worker in self._runs.items() if worker.finished()]
        for run_id in finished[: max(0, len(finished) - self._max_finished_runs)]:
            del self._runs[run_id]

    def health(self) -> Dict[str, Any]:
        with self._lock:
            workers = list(self._runs.values())
        return {
            "status": "ok",
            "runs": len(workers),
            "active_runs": sum(1 for worker in workers if worker.is_running()),
        }


state = ServiceState()


# Helper conversion -----------------------------------------------------------


def _to_summary(result: RunResult) -> RunSummaryModel:
    return RunSummaryModel(
        id=result.run_id,
        session_id=result.session_id,
        goal=result.goal,
        state=result.state,
        created_at=result.created_at,
        finished_at=result.finished_at,
    )


def _to_detail(result: RunResult) -> RunDetailModel:
    return RunDetailModel(
        **_to_summary(result).model_dump(),
        success=result.success,
        message=result.message,
        cause=result.cause,
        live_view_url=result.live_view_url,
        history=[step.model_dump(mode="json") for step in result.history],
        messages=result.messages,
        choices=result.choices,
    )


# API routes -----------------------------------------------------------------


@app.get("/health")
def get_health() -> Dict[str, Any]:
    return state.health()


@app.get("/runs", response_model=List[RunSummaryModel])
def list_runs() -> List[RunSummaryModel]:
    return [_to_summary(result) for result in state.list_runs()]


@app.post("/runs", response_model=RunSummaryModel)
def create_run(payload: RunCreateRequest) -> RunSummaryModel:
    worker = state.start_run(payload.goal, session_id=payload.session_id)
    return _to_summary(worker.snapshot())


@app.get("/runs/{run_id}", response_model=RunDetailModel)
def get_run_detail(run_id: str) -> RunDetailModel:
    try:
        worker = state.get_run(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found") from None
    return _to_detail(worker.snapshot())


@app.post("/runs/{run_id}/resume", response_model=RunDetailModel)
def resume_run(run_id: str, payload: ResumeRequest) -> RunDetailModel:
    try:
        worker = state.get_run(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found") from None
    try:
        result = worker.resume(payload.index)
    except RunStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _to_detail(result)


@app.post("/sessions/{session_id}/follow-ups", response_model=RunSummaryModel)
def create_follow_up(session_id: str, payload: FollowUpRequest) -> RunSummaryModel:
    worker = state.start_run(
        payload.goal,
        session_id=session_id,
        prior_messages=payload.prior_messages,
    )
    return _to_summary(worker.snapshot())


@app.delete("/sessions/{session_id}", response_model=TerminateResponse)
def terminate_session(session_id: str) -> TerminateResponse:
    screenshot = state.orchestrator.terminate(session_id)
    encoded = base64.b64encode(screenshot).decode("ascii") if screenshot else None
    return TerminateResponse(success=True, screenshot=encoded)


@app.post("/sessions/{session_id}/chat", response_model=PageAnswerResult)
def ask_page(session_id: str, payload: ChatRequest) -> PageAnswerResult:
    try:
        return state.orchestrator.ask_page(session_id, payload.question, payload.history)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ChatError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
