from __future__ import annotations

import copy
import datetime as dt
import itertools
import os
from collections import defaultdict
from types import SimpleNamespace
from typing import Callable

import pytest
from postgrest.exceptions import APIError

os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service")
os.environ.setdefault("APP_ENV", "test")

from question_bank.config import Settings  # noqa: E402
from question_bank.pipeline import SubmissionPipeline  # noqa: E402

PRIMARY_KEYS = {
    "questions": "id",
    "question_index": "normalized_key",
    "invite_codes": "code",
    "legacy_questions": "id",
}


class FakeSupabase:
    """In-memory stand-in for the Supabase query builder used by the stores."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = defaultdict(list)
        self.fail_on: set[tuple[str, str]] = set()
        self.hooks: list[Callable[[str, str], None]] = []

    def table(self, name: str) -> "_FakeQuery":
        return _FakeQuery(self, name)

    def rows(self, name: str) -> list[dict]:
        return self.tables[name]

    def once(self, table: str, op: str, action: Callable[[], None]) -> None:
        """Run ``action`` right before the next ``op`` on ``table``."""

        def hook(name: str, current_op: str) -> None:
            if name == table and current_op == op:
                self.hooks.remove(hook)
                action()

        self.hooks.append(hook)


class _FakeQuery:
    def __init__(self, db: FakeSupabase, name: str):
        self._db = db
        self._name = name
        self._op = "select"
        self._payload: dict | None = None
        self._columns = "*"
        self._filters: list[tuple[str, object]] = []
        self._limit: int | None = None

    # Supabase-style query builder surface ---------------------------------
    def select(self, columns: str = "*", *_args, **_kwargs):
        self._op = "select"
        self._columns = columns
        return self

    def insert(self, row: dict, *_args, **_kwargs):
        self._op = "insert"
        self._payload = row
        return self

    def update(self, values: dict, *_args, **_kwargs):
        self._op = "update"
        self._payload = values
        return self

    def delete(self, *_args, **_kwargs):
        self._op = "delete"
        return self

    def eq(self, column: str, value):
        self._filters.append((column, value))
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _matches(self, row: dict) -> bool:
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self):
        for hook in list(self._db.hooks):
            hook(self._name, self._op)
        if (self._name, self._op) in self._db.fail_on:
            raise RuntimeError(f"{self._name}.{self._op} unavailable")

        rows = self._db.tables[self._name]
        if self._op == "select":
            matched = [copy.deepcopy(row) for row in rows if self._matches(row)]
            if self._limit is not None:
                matched = matched[: self._limit]
            if self._columns.strip() != "*":
                wanted = [column.strip() for column in self._columns.split(",")]
                matched = [{column: row.get(column) for column in wanted} for row in matched]
            return SimpleNamespace(data=matched)

        if self._op == "insert":
            pk = PRIMARY_KEYS.get(self._name)
            if pk and any(row.get(pk) == self._payload.get(pk) for row in rows):
                raise APIError(
                    {
                        "code": "23505",
                        "message": "duplicate key value violates unique constraint",
                        "details": None,
                        "hint": None,
                    }
                )
            rows.append(copy.deepcopy(self._payload))
            return SimpleNamespace(data=[copy.deepcopy(self._payload)])

        if self._op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self._payload))
                    updated.append(copy.deepcopy(row))
            return SimpleNamespace(data=updated)

        removed = [row for row in rows if self._matches(row)]
        self._db.tables[self._name] = [row for row in rows if not self._matches(row)]
        return SimpleNamespace(data=removed)


class ScriptedAI:
    """Returns the queued replies in order; exceptions in the queue are raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            raise AssertionError(f"Unexpected AI call: {prompt[:80]}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self, start: dt.datetime):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += dt.timedelta(seconds=seconds)


class FixedChoice:
    """Deterministic randomness source: cycles through the given picks."""

    def __init__(self, *indexes: int):
        self._indexes = itertools.cycle(indexes or (0,))

    def choice(self, seq):
        return seq[next(self._indexes) % len(seq)]


VALID = '{"verdict": "VALID"}'


def refined(question: str, answer: str) -> str:
    return f'{{"refined_question": "{question}", "refined_answer": "{answer}"}}'


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2025, 3, 1, 8, 0, tzinfo=dt.timezone.utc))


@pytest.fixture
def make_pipeline(fake_supabase: FakeSupabase, clock: FakeClock):
    def factory(ai, **kwargs) -> SubmissionPipeline:
        ids = itertools.count(1)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("id_factory", lambda: f"q-{next(ids)}")
        kwargs.setdefault("rng", FixedChoice(0, 1, 2, 3, 4, 5, 6, 7))
        kwargs.setdefault("sleep", clock.advance)
        return SubmissionPipeline(fake_supabase, ai, **kwargs)

    return factory


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_role_key="service",
        supabase_anon_key=None,
        app_env="test",
        log_level="INFO",
        cors_allow_origins=("http://localhost:3000",),
        llm_provider="gemini",
        gemini_api_keys=("key-one-1111", "key-two-2222"),
        gemini_model="gemini-2.5-flash",
        openai_api_keys=(),
        openai_model="gpt-4o-mini",
        ai_timeout_seconds=5.0,
        invite_submission_threshold=3,
        invite_bypass_code="truegoddess",
        index_claim_grace_seconds=30.0,
        merge_max_attempts=3,
        submit_rate_limit_per_minute=60,
    )
