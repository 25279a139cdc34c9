from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import Settings, get_settings
from .errors import RateLimited
from .llm_client import LLMClient, LLMConfig
from .pipeline import SubmissionPipeline
from .rate_limiter import RateLimiter
from .store import QuestionStore
from .supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/questions", tags=["questions"])

_rate_limiter: RateLimiter | None = None


class SubmitQuestionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    room: str = Field(..., max_length=100)
    question_text: str = Field(..., alias="questionText", max_length=4000)
    answer_text: str = Field(..., alias="answerText", max_length=4000)
    current_submission_count: int = Field(default=0, alias="currentSubmissionCount", ge=0)

    @field_validator("room", "question_text", "answer_text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class SubmitQuestionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    verdict: str
    message: str
    invite_code: Optional[str] = Field(default=None, alias="inviteCode")


class RejectedSubmissionResponse(BaseModel):
    verdict: str = "INVALID"
    reason: str


class MasterQuestionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room: str
    master_question: str = Field(..., alias="masterQuestion")
    master_answer: str = Field(..., alias="masterAnswer")


class QuestionListResponse(BaseModel):
    questions: List[MasterQuestionOut]


def get_pipeline(settings: Settings = Depends(get_settings)) -> SubmissionPipeline:
    client = get_supabase_client(service_role=True)
    ai = LLMClient(LLMConfig.from_settings(settings))
    return SubmissionPipeline.from_settings(client, ai, settings)


def get_question_store() -> QuestionStore:
    return QuestionStore(get_supabase_client(service_role=True))


def _check_rate_limit(request: Request, settings: Settings) -> None:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            limit=settings.submit_rate_limit_per_minute,
            window_seconds=60,
        )
    requester_ip = request.client.host if request.client else "unknown"
    if not _rate_limiter.allow(requester_ip):
        logger.info("Rate limited submission from %s", requester_ip)
        raise RateLimited()


@router.post(
    "/submit",
    response_model=SubmitQuestionResponse,
    responses={status.HTTP_400_BAD_REQUEST: {"model": RejectedSubmissionResponse}},
)
def submit_question(
    payload: SubmitQuestionRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    pipeline: SubmissionPipeline = Depends(get_pipeline),
):
    _check_rate_limit(request, settings)

    outcome = pipeline.submit(
        room=payload.room,
        question_text=payload.question_text,
        answer_text=payload.answer_text,
        current_submission_count=payload.current_submission_count,
    )
    if not outcome.accepted:
        rejected = RejectedSubmissionResponse(reason=outcome.reason or "No reason given.")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=rejected.model_dump())

    return SubmitQuestionResponse(
        verdict=outcome.verdict,
        message=outcome.message,
        invite_code=outcome.invite_code,
    )


@router.get("", response_model=QuestionListResponse)
def list_questions(store: QuestionStore = Depends(get_question_store)) -> QuestionListResponse:
    masters = store.list_masters()
    return QuestionListResponse(
        questions=[
            MasterQuestionOut(
                room=item.room,
                master_question=item.master_question,
                master_answer=item.master_answer,
            )
            for item in masters
        ]
    )
