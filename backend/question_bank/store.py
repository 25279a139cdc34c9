"""Supabase-backed persistence for questions, the duplicate index and invite codes.

Tables:

* ``questions``: one row per canonical question, ``submissions`` is a JSON
  array and ``version`` guards read-modify-write cycles.
* ``question_index``: ``normalized_key`` (primary key) -> ``question_id``.
* ``invite_codes``: ``code`` (primary key).
* ``legacy_questions``: append-only blobs from the first deployment, only
  read by the migration script.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

QUESTIONS_TABLE = "questions"
INDEX_TABLE = "question_index"
INVITE_CODES_TABLE = "invite_codes"
LEGACY_TABLE = "legacy_questions"

UNIQUE_VIOLATION = "23505"
_FRACTION = re.compile(r"\.(\d+)")


class StaleRecord(Exception):
    """The record changed since it was read; the write was not applied."""


def _is_unique_violation(exc: APIError) -> bool:
    return str(getattr(exc, "code", "")) == UNIQUE_VIOLATION


def _parse_timestamp(value: Any) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value
    # PostgREST trims trailing zeros from fractional seconds.
    text = _FRACTION.sub(
        lambda match: "." + match.group(1).ljust(6, "0")[:6], str(value).replace("Z", "+00:00")
    )
    parsed = dt.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


@dataclass(frozen=True)
class SubmissionEntry:
    timestamp: dt.datetime
    original_question: str
    original_answer: str
    refined_answer: str

    def to_json(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "original_question": self.original_question,
            "original_answer": self.original_answer,
            "refined_answer": self.refined_answer,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "SubmissionEntry":
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            original_question=data.get("original_question") or "",
            original_answer=data.get("original_answer") or "",
            refined_answer=data.get("refined_answer") or "",
        )


@dataclass
class QuestionRecord:
    id: str
    room: str
    master_question: str
    master_answer: str
    created_at: dt.datetime
    submissions: List[SubmissionEntry] = field(default_factory=list)
    version: int = 1

    def with_submission(self, entry: SubmissionEntry, master_answer: str) -> "QuestionRecord":
        """Copy with ``entry`` appended and the master answer replaced."""
        return replace(
            self,
            submissions=[*self.submissions, entry],
            master_answer=master_answer,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room": self.room,
            "master_question": self.master_question,
            "master_answer": self.master_answer,
            "created_at": self.created_at.isoformat(),
            "submissions": [entry.to_json() for entry in self.submissions],
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "QuestionRecord":
        submissions = row.get("submissions") or []
        if isinstance(submissions, str):
            submissions = json.loads(submissions)
        return cls(
            id=row["id"],
            room=row["room"],
            master_question=row.get("master_question") or "",
            master_answer=row.get("master_answer") or "",
            created_at=_parse_timestamp(row["created_at"]),
            submissions=[SubmissionEntry.from_json(item) for item in submissions],
            version=int(row.get("version") or 1),
        )


@dataclass(frozen=True)
class IndexEntry:
    normalized_key: str
    question_id: str
    claimed_at: dt.datetime


@dataclass(frozen=True)
class MasterQuestion:
    room: str
    master_question: str
    master_answer: str


class QuestionStore:
    def __init__(self, client: Client) -> None:
        self._client = client

    def get(self, question_id: str) -> Optional[QuestionRecord]:
        try:
            response = (
                self._client.table(QUESTIONS_TABLE)
                .select("*")
                .eq("id", question_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            logger.exception("Failed to load question %s", question_id)
            raise StoreUnavailable(debug=str(exc)) from exc
        rows = response.data or []
        return QuestionRecord.from_row(rows[0]) if rows else None

    def create(self, record: QuestionRecord) -> None:
        try:
            self._client.table(QUESTIONS_TABLE).insert(record.to_row()).execute()
        except Exception as exc:
            logger.exception("Failed to create question %s", record.id)
            raise StoreUnavailable(debug=str(exc)) from exc

    def update(self, record: QuestionRecord) -> QuestionRecord:
        """Overwrite ``record`` if nobody else wrote it since it was read.

        Returns the stored copy with its bumped version; raises
        ``StaleRecord`` when the stored version moved on.
        """
        updated = replace(record, version=record.version + 1)
        row = updated.to_row()
        row.pop("id")
        try:
            response = (
                self._client.table(QUESTIONS_TABLE)
                .update(row)
                .eq("id", record.id)
                .eq("version", record.version)
                .execute()
            )
        except Exception as exc:
            logger.exception("Failed to update question %s", record.id)
            raise StoreUnavailable(debug=str(exc)) from exc
        if not response.data:
            raise StaleRecord(record.id)
        return updated

    def list_masters(self) -> List[MasterQuestion]:
        try:
            response = (
                self._client.table(QUESTIONS_TABLE)
                .select("room, master_question, master_answer")
                .execute()
            )
        except Exception as exc:
            logger.exception("Failed to list questions")
            raise StoreUnavailable(debug=str(exc)) from exc

        masters: List[MasterQuestion] = []
        for row in response.data or []:
            question = (row.get("master_question") or "").strip()
            answer = (row.get("master_answer") or "").strip()
            if not question or not answer:
                continue
            masters.append(
                MasterQuestion(
                    room=row.get("room") or "",
                    master_question=question,
                    master_answer=answer,
                )
            )
        return masters


class DuplicateIndex:
    def __init__(self, client: Client) -> None:
        self._client = client

    def lookup(self, normalized_key: str) -> Optional[IndexEntry]:
        try:
            response = (
                self._client.table(INDEX_TABLE)
                .select("*")
                .eq("normalized_key", normalized_key)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            logger.exception("Failed to look up index key %r", normalized_key)
            raise StoreUnavailable(debug=str(exc)) from exc
        rows = response.data or []
        if not rows:
            return None
        row = rows[0]
        return IndexEntry(
            normalized_key=row["normalized_key"],
            question_id=row["question_id"],
            claimed_at=_parse_timestamp(row["claimed_at"]),
        )

    def claim(self, normalized_key: str, question_id: str, claimed_at: dt.datetime) -> bool:
        """Insert ``normalized_key -> question_id`` unless the key exists.

        Returns False when another writer holds the key.
        """
        try:
            self._client.table(INDEX_TABLE).insert(
                {
                    "normalized_key": normalized_key,
                    "question_id": question_id,
                    "claimed_at": claimed_at.isoformat(),
                }
            ).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                return False
            logger.exception("Failed to claim index key %r", normalized_key)
            raise StoreUnavailable(debug=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to claim index key %r", normalized_key)
            raise StoreUnavailable(debug=str(exc)) from exc
        return True

    def release(self, normalized_key: str, question_id: str) -> None:
        """Delete the entry, but only while it still points at ``question_id``."""
        try:
            (
                self._client.table(INDEX_TABLE)
                .delete()
                .eq("normalized_key", normalized_key)
                .eq("question_id", question_id)
                .execute()
            )
        except Exception as exc:
            logger.exception("Failed to release index key %r", normalized_key)
            raise StoreUnavailable(debug=str(exc)) from exc


class InviteCodeRegistry:
    def __init__(self, client: Client) -> None:
        self._client = client

    def add(self, code: str, created_at: dt.datetime) -> bool:
        """Store a new code. Returns False if the code was already issued."""
        try:
            self._client.table(INVITE_CODES_TABLE).insert(
                {"code": code, "created_at": created_at.isoformat()}
            ).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                return False
            logger.exception("Failed to store invite code")
            raise StoreUnavailable(debug=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to store invite code")
            raise StoreUnavailable(debug=str(exc)) from exc
        return True

    def contains(self, code: str) -> bool:
        try:
            response = (
                self._client.table(INVITE_CODES_TABLE)
                .select("code")
                .eq("code", code)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            logger.exception("Failed to check invite code")
            raise StoreUnavailable(debug=str(exc)) from exc
        return bool(response.data)

    def discard(self, code: str) -> None:
        try:
            self._client.table(INVITE_CODES_TABLE).delete().eq("code", code).execute()
        except Exception as exc:
            logger.exception("Failed to discard invite code")
            raise StoreUnavailable(debug=str(exc)) from exc


def iter_legacy_blobs(client: Client) -> Iterator[dict[str, Any]]:
    """Yield the decoded legacy question blobs, oldest first."""
    try:
        response = client.table(LEGACY_TABLE).select("*").execute()
    except Exception as exc:
        logger.exception("Failed to read legacy questions")
        raise StoreUnavailable(debug=str(exc)) from exc

    blobs: List[dict[str, Any]] = []
    for row in response.data or []:
        payload = row.get("payload")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable legacy row %s", row.get("id"))
                continue
        if isinstance(payload, dict):
            blobs.append(payload)
    blobs.sort(key=lambda blob: str(blob.get("timestamp") or ""))
    yield from blobs
