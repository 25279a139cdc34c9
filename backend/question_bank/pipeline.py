"""Submission pipeline: validate, refine, deduplicate, merge, issue invite codes.

Validation failures are fatal to a submission; refinement and enrichment
failures fall back to non-AI text and are only logged.

The invite code, when one is due, is registered before the submission is
stored and withdrawn again if storing fails, so a failed request leaves
neither behind.

On the create path the index key is claimed before the record is written,
so a crash between the two writes leaves at most an index entry without a
record. Such entries are repaired the next time the key is submitted.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import random
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from supabase import Client

from .config import Settings
from .errors import InvalidInput, StoreUnavailable, ValidationUnavailable
from .llm_client import CompletionClient, LLMClientError
from .prompts import (
    MalformedReply,
    Refinement,
    ValidationJudgment,
    build_enrichment_prompt,
    build_refinement_prompt,
    build_validation_prompt,
    parse_enrichment,
    parse_refinement,
    parse_validation,
)
from .store import (
    DuplicateIndex,
    IndexEntry,
    InviteCodeRegistry,
    QuestionRecord,
    QuestionStore,
    StaleRecord,
    SubmissionEntry,
)
from .utils import RandomSource, generate_invite_code, normalize_question_key

logger = logging.getLogger(__name__)

VERDICT_VALID = "VALID"
VERDICT_INVALID = "INVALID"

MAX_INVITE_CODE_ATTEMPTS = 5


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _new_question_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class SubmissionOutcome:
    verdict: str
    message: str
    reason: Optional[str] = None
    invite_code: Optional[str] = None
    question_id: Optional[str] = None
    merged: bool = False

    @property
    def accepted(self) -> bool:
        return self.verdict == VERDICT_VALID


class SubmissionPipeline:
    def __init__(
        self,
        client: Client,
        ai: CompletionClient,
        *,
        invite_threshold: int = 3,
        claim_grace_seconds: float = 30.0,
        merge_max_attempts: int = 3,
        poll_interval_seconds: float = 0.5,
        clock: Callable[[], dt.datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_question_id,
        rng: RandomSource | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.questions = QuestionStore(client)
        self.index = DuplicateIndex(client)
        self.invite_codes = InviteCodeRegistry(client)
        self._ai = ai
        self.invite_threshold = invite_threshold
        self.claim_grace_seconds = max(0.0, claim_grace_seconds)
        self.merge_max_attempts = max(1, merge_max_attempts)
        self.poll_interval_seconds = max(0.01, poll_interval_seconds)
        self._clock = clock
        self._id_factory = id_factory
        self._rng = rng or random.SystemRandom()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, client: Client, ai: CompletionClient, settings: Settings) -> "SubmissionPipeline":
        return cls(
            client,
            ai,
            invite_threshold=settings.invite_submission_threshold,
            claim_grace_seconds=settings.index_claim_grace_seconds,
            merge_max_attempts=settings.merge_max_attempts,
        )

    def submit(
        self,
        room: str,
        question_text: str,
        answer_text: str,
        current_submission_count: int = 0,
    ) -> SubmissionOutcome:
        room = (room or "").strip()
        question = (question_text or "").strip()
        answer = (answer_text or "").strip()
        if not room or not question or not answer:
            raise InvalidInput()
        if current_submission_count < 0:
            raise InvalidInput("currentSubmissionCount must not be negative.")

        judgment = self._validate(question, answer)
        if not judgment.is_valid:
            logger.info("Submission rejected by AI validator: %s", judgment.reason)
            return SubmissionOutcome(
                verdict=VERDICT_INVALID,
                message="The answer was rejected by the AI validator.",
                reason=judgment.reason or "No reason given.",
            )

        refinement = self._refine(question, answer)
        entry = SubmissionEntry(
            timestamp=self._clock(),
            original_question=question,
            original_answer=answer,
            refined_answer=refinement.refined_answer,
        )
        normalized_key = normalize_question_key(refinement.refined_question)

        invite_code = self._maybe_issue_invite_code(current_submission_count)
        try:
            record, merged = self._persist(room, normalized_key, refinement, entry)
        except StoreUnavailable:
            if invite_code is not None:
                self._withdraw_invite_code(invite_code)
            raise
        if merged:
            message = "Question validated and merged into an existing question."
        else:
            message = "Question validated and saved."
        return SubmissionOutcome(
            verdict=VERDICT_VALID,
            message=message,
            invite_code=invite_code,
            question_id=record.id,
            merged=merged,
        )

    # AI steps ---------------------------------------------------------------

    def _validate(self, question: str, answer: str) -> ValidationJudgment:
        try:
            raw = self._ai.complete(build_validation_prompt(question, answer))
            return parse_validation(raw)
        except (LLMClientError, MalformedReply) as exc:
            logger.error("AI validation failed: %s", exc)
            raise ValidationUnavailable(debug=str(exc)) from exc

    def _refine(self, question: str, answer: str) -> Refinement:
        try:
            raw = self._ai.complete(build_refinement_prompt(question, answer))
            return parse_refinement(raw)
        except (LLMClientError, MalformedReply) as exc:
            logger.warning("AI refinement degraded, keeping original text: %s", exc)
            return Refinement(refined_question=question, refined_answer=answer)

    def _enrich(self, question: str, master_answer: str, answers: Sequence[str], fallback: str) -> str:
        try:
            raw = self._ai.complete(build_enrichment_prompt(question, master_answer, answers))
            return parse_enrichment(raw)
        except (LLMClientError, MalformedReply) as exc:
            logger.warning("AI enrichment degraded, using latest refined answer: %s", exc)
            return fallback

    # Persistence ------------------------------------------------------------

    def _persist(
        self,
        room: str,
        normalized_key: str,
        refinement: Refinement,
        entry: SubmissionEntry,
    ) -> tuple[QuestionRecord, bool]:
        # Two extra rounds: one for a lost create race, one for an index repair.
        stale_writes = 0
        for _ in range(self.merge_max_attempts + 2):
            existing = self.index.lookup(normalized_key)
            if existing is None:
                created = self._create(room, normalized_key, refinement, entry)
                if created is not None:
                    return created, False
                logger.info("Index key %r was claimed concurrently; merging instead", normalized_key)
                continue

            record = self._await_record(existing)
            if record is None:
                logger.warning(
                    "Index key %r points at missing question %s; dropping the entry",
                    normalized_key,
                    existing.question_id,
                )
                self.index.release(normalized_key, existing.question_id)
                continue

            try:
                return self._merge(record, entry), True
            except StaleRecord:
                stale_writes += 1
                logger.info(
                    "Question %s changed during merge (attempt %d/%d)",
                    record.id,
                    stale_writes,
                    self.merge_max_attempts,
                )
                if stale_writes >= self.merge_max_attempts:
                    break

        raise StoreUnavailable("The question is being updated by others. Please try again.")

    def _create(
        self,
        room: str,
        normalized_key: str,
        refinement: Refinement,
        entry: SubmissionEntry,
    ) -> Optional[QuestionRecord]:
        question_id = self._id_factory()
        if not self.index.claim(normalized_key, question_id, entry.timestamp):
            return None

        record = QuestionRecord(
            id=question_id,
            room=room,
            master_question=refinement.refined_question,
            master_answer=refinement.refined_answer,
            created_at=entry.timestamp,
            submissions=[entry],
        )
        try:
            self.questions.create(record)
        except StoreUnavailable:
            self._release_claim(normalized_key, question_id)
            raise
        logger.info("Created question %s in room %r", question_id, room)
        return record

    def _release_claim(self, normalized_key: str, question_id: str) -> None:
        try:
            self.index.release(normalized_key, question_id)
        except StoreUnavailable:
            logger.warning(
                "Could not release index key %r after a failed create; it will be repaired on next use",
                normalized_key,
            )

    def _await_record(self, entry: IndexEntry) -> Optional[QuestionRecord]:
        """Fetch the indexed record, waiting while a fresh claim may still be in flight."""
        polls = math.ceil(self.claim_grace_seconds / self.poll_interval_seconds)
        for _ in range(polls + 1):
            record = self.questions.get(entry.question_id)
            if record is not None:
                return record
            age = (self._clock() - entry.claimed_at).total_seconds()
            if age >= self.claim_grace_seconds:
                return None
            self._sleep(min(self.poll_interval_seconds, self.claim_grace_seconds - age))
        return None

    def _merge(self, record: QuestionRecord, entry: SubmissionEntry) -> QuestionRecord:
        answers = [submission.refined_answer for submission in record.submissions]
        answers.append(entry.refined_answer)
        master_answer = self._enrich(
            record.master_question,
            record.master_answer,
            answers,
            fallback=entry.refined_answer,
        )
        stored = self.questions.update(record.with_submission(entry, master_answer))
        logger.info(
            "Merged submission into question %s (%d submissions)",
            stored.id,
            len(stored.submissions),
        )
        return stored

    # Invite codes -----------------------------------------------------------

    def _maybe_issue_invite_code(self, current_submission_count: int) -> Optional[str]:
        if current_submission_count + 1 < self.invite_threshold:
            return None
        for _ in range(MAX_INVITE_CODE_ATTEMPTS):
            code = generate_invite_code(self._rng)
            if self.invite_codes.add(code, self._clock()):
                logger.info("Issued invite code after %d submissions", current_submission_count + 1)
                return code
        raise StoreUnavailable("Could not issue a unique invite code. Please try again.")

    def _withdraw_invite_code(self, code: str) -> None:
        try:
            self.invite_codes.discard(code)
        except StoreUnavailable:
            logger.warning("Could not withdraw unused invite code after a failed submission")
