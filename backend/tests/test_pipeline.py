from __future__ import annotations

import datetime as dt

import pytest

from conftest import VALID, FixedChoice, ScriptedAI, refined
from question_bank.errors import InvalidInput, StoreUnavailable, ValidationUnavailable
from question_bank.llm_client import AIRequestFailed, AIResponseMalformed
from question_bank.store import QuestionRecord, SubmissionEntry


def _seed_question(fake_supabase, question_id, question, answer, when):
    record = QuestionRecord(
        id=question_id,
        room="A",
        master_question=question,
        master_answer=answer,
        created_at=when,
        submissions=[
            SubmissionEntry(
                timestamp=when,
                original_question=question,
                original_answer=answer,
                refined_answer=answer,
            )
        ],
    )
    fake_supabase.rows("questions").append(record.to_row())
    fake_supabase.rows("question_index").append(
        {
            "normalized_key": question.strip().lower(),
            "question_id": question_id,
            "claimed_at": when.isoformat(),
        }
    )
    return record


def test_new_question_creates_record_and_index_entry(make_pipeline, fake_supabase):
    ai = ScriptedAI(VALID, refined("What is 2+2?", "4"))
    pipeline = make_pipeline(ai)

    outcome = pipeline.submit("A", "What is 2+2?", "4", 0)

    assert outcome.verdict == "VALID"
    assert outcome.invite_code is None
    assert outcome.merged is False
    questions = fake_supabase.rows("questions")
    assert len(questions) == 1
    assert questions[0]["master_answer"] == "4"
    assert questions[0]["room"] == "A"
    assert len(questions[0]["submissions"]) == 1
    assert fake_supabase.rows("question_index") == [
        {
            "normalized_key": "what is 2+2?",
            "question_id": "q-1",
            "claimed_at": questions[0]["created_at"],
        }
    ]


def test_case_variant_merges_and_issues_invite_code(make_pipeline, fake_supabase):
    first = make_pipeline(ScriptedAI(VALID, refined("What is 2+2?", "4")))
    first.submit("A", "What is 2+2?", "4", 0)

    ai = ScriptedAI(VALID, refined("what is 2+2?", "four"), "4 (four)")
    outcome = make_pipeline(ai).submit("A", "what is 2+2?", "four", 2)

    assert outcome.verdict == "VALID"
    assert outcome.merged is True
    assert outcome.question_id == "q-1"
    assert outcome.invite_code is not None
    assert len(outcome.invite_code) == 8

    enrichment_prompt = ai.prompts[-1]
    assert "1. 4" in enrichment_prompt
    assert "2. four" in enrichment_prompt

    questions = fake_supabase.rows("questions")
    assert len(questions) == 1
    assert len(fake_supabase.rows("question_index")) == 1
    assert len(questions[0]["submissions"]) == 2
    assert questions[0]["master_answer"] == "4 (four)"
    assert questions[0]["master_question"] == "What is 2+2?"
    assert questions[0]["version"] == 2
    assert fake_supabase.rows("invite_codes")[0]["code"] == outcome.invite_code


def test_same_submission_twice_appends_two_entries(make_pipeline, fake_supabase):
    make_pipeline(ScriptedAI(VALID, refined("Capital of France?", "Paris"))).submit(
        "Geo", "Capital of France?", "Paris", 0
    )
    make_pipeline(ScriptedAI(VALID, refined("Capital of France?", "Paris"), "Paris")).submit(
        "Geo", "Capital of France?", "Paris", 0
    )

    questions = fake_supabase.rows("questions")
    assert len(questions) == 1
    assert len(questions[0]["submissions"]) == 2


def test_validation_failure_is_server_error_and_persists_nothing(make_pipeline, fake_supabase):
    pipeline = make_pipeline(ScriptedAI(AIRequestFailed("status 500")))

    with pytest.raises(ValidationUnavailable):
        pipeline.submit("A", "What is 2+2?", "4", 2)

    assert fake_supabase.rows("questions") == []
    assert fake_supabase.rows("question_index") == []
    assert fake_supabase.rows("invite_codes") == []


def test_unparseable_validation_reply_is_server_error(make_pipeline, fake_supabase):
    pipeline = make_pipeline(ScriptedAI("Looks right to me!"))

    with pytest.raises(ValidationUnavailable):
        pipeline.submit("A", "What is 2+2?", "4", 0)

    assert fake_supabase.rows("questions") == []


def test_invalid_verdict_returns_rejection_without_further_calls(make_pipeline, fake_supabase):
    ai = ScriptedAI('```json\n{"verdict": "INVALID", "reason": "2+2 is not 5"}\n```')

    outcome = make_pipeline(ai).submit("A", "What is 2+2?", "5", 5)

    assert outcome.verdict == "INVALID"
    assert outcome.reason == "2+2 is not 5"
    assert outcome.invite_code is None
    assert len(ai.prompts) == 1
    assert fake_supabase.rows("questions") == []
    assert fake_supabase.rows("invite_codes") == []


@pytest.mark.parametrize("refine_reply", [AIResponseMalformed("no text"), "not json at all"])
def test_refinement_failure_keeps_original_text(make_pipeline, fake_supabase, refine_reply):
    outcome = make_pipeline(ScriptedAI(VALID, refine_reply)).submit(
        "A", "  what is 2+2 ?", " 4 ", 0
    )

    assert outcome.verdict == "VALID"
    record = fake_supabase.rows("questions")[0]
    assert record["master_question"] == "what is 2+2 ?"
    assert record["master_answer"] == "4"
    assert fake_supabase.rows("question_index")[0]["normalized_key"] == "what is 2+2 ?"


def test_enrichment_failure_uses_latest_refined_answer(make_pipeline, fake_supabase, clock):
    _seed_question(fake_supabase, "existing", "What is H2O?", "Water", clock())
    ai = ScriptedAI(VALID, refined("What is H2O?", "Water (dihydrogen monoxide)"), AIRequestFailed("429"))

    outcome = make_pipeline(ai).submit("A", "what is h2o?", "water lol", 0)

    assert outcome.merged is True
    record = fake_supabase.rows("questions")[0]
    assert record["master_answer"] == "Water (dihydrogen monoxide)"
    assert len(record["submissions"]) == 2


@pytest.mark.parametrize(
    "room, question, answer",
    [("", "Q?", "A"), ("A", "   ", "A"), ("A", "Q?", "\n")],
)
def test_blank_fields_are_rejected_before_any_ai_call(make_pipeline, room, question, answer):
    ai = ScriptedAI()

    with pytest.raises(InvalidInput):
        make_pipeline(ai).submit(room, question, answer, 0)

    assert ai.prompts == []


def test_negative_submission_count_is_invalid(make_pipeline):
    with pytest.raises(InvalidInput):
        make_pipeline(ScriptedAI()).submit("A", "Q?", "A", -1)


@pytest.mark.parametrize("count, expect_code", [(0, False), (1, False), (2, True), (7, True)])
def test_invite_code_threshold(make_pipeline, fake_supabase, count, expect_code):
    outcome = make_pipeline(ScriptedAI(VALID, refined("Q?", "A"))).submit("A", "Q?", "A", count)

    assert (outcome.invite_code is not None) is expect_code
    assert len(fake_supabase.rows("invite_codes")) == (1 if expect_code else 0)


def test_invite_code_collision_generates_a_new_code(make_pipeline, fake_supabase, clock):
    fake_supabase.rows("invite_codes").append({"code": "AAAAAAAA", "created_at": clock().isoformat()})
    rng = FixedChoice(0, 0, 0, 0, 0, 0, 0, 0, 1, 1, 1, 1, 1, 1, 1, 1)

    outcome = make_pipeline(ScriptedAI(VALID, refined("Q?", "A")), rng=rng).submit("A", "Q?", "A", 2)

    assert outcome.invite_code == "BBBBBBBB"
    assert {row["code"] for row in fake_supabase.rows("invite_codes")} == {"AAAAAAAA", "BBBBBBBB"}


def test_lost_create_race_merges_into_winner(make_pipeline, fake_supabase, clock):
    def concurrent_winner():
        _seed_question(fake_supabase, "winner", "Who wrote Hamlet?", "Shakespeare", clock())

    fake_supabase.once("question_index", "insert", concurrent_winner)
    ai = ScriptedAI(VALID, refined("Who wrote Hamlet?", "William Shakespeare"), "William Shakespeare")

    outcome = make_pipeline(ai).submit("Lit", "who wrote hamlet", "shakespeare", 0)

    assert outcome.merged is True
    assert outcome.question_id == "winner"
    questions = fake_supabase.rows("questions")
    assert [row["id"] for row in questions] == ["winner"]
    assert len(questions[0]["submissions"]) == 2
    assert fake_supabase.rows("question_index")[0]["question_id"] == "winner"


def test_dangling_index_entry_is_repaired_by_creating_fresh(make_pipeline, fake_supabase, clock):
    stale_claim = clock() - dt.timedelta(hours=1)
    fake_supabase.rows("question_index").append(
        {"normalized_key": "q?", "question_id": "ghost", "claimed_at": stale_claim.isoformat()}
    )

    outcome = make_pipeline(ScriptedAI(VALID, refined("Q?", "A"))).submit("A", "Q?", "A", 0)

    assert outcome.merged is False
    assert outcome.question_id == "q-1"
    assert fake_supabase.rows("question_index")[0]["question_id"] == "q-1"
    assert [row["id"] for row in fake_supabase.rows("questions")] == ["q-1"]


def test_fresh_claim_waits_for_record_in_flight(make_pipeline, fake_supabase, clock):
    fake_supabase.rows("question_index").append(
        {"normalized_key": "q?", "question_id": "in-flight", "claimed_at": clock().isoformat()}
    )

    def sleep(seconds):
        clock.advance(seconds)
        if not fake_supabase.rows("questions"):
            fake_supabase.rows("questions").append(
                QuestionRecord(
                    id="in-flight",
                    room="A",
                    master_question="Q?",
                    master_answer="A",
                    created_at=clock(),
                ).to_row()
            )

    ai = ScriptedAI(VALID, refined("Q?", "A!"), "A!")
    outcome = make_pipeline(ai, sleep=sleep).submit("A", "Q?", "A!", 0)

    assert outcome.merged is True
    assert outcome.question_id == "in-flight"
    assert len(fake_supabase.rows("questions")) == 1


def test_stale_merge_is_retried(make_pipeline, fake_supabase, clock):
    _seed_question(fake_supabase, "existing", "Q?", "A", clock())

    def concurrent_merge():
        row = fake_supabase.rows("questions")[0]
        row["version"] += 1
        row["submissions"] = row["submissions"] + [
            {
                "timestamp": clock().isoformat(),
                "original_question": "q?",
                "original_answer": "a",
                "refined_answer": "a",
            }
        ]

    fake_supabase.once("questions", "update", concurrent_merge)
    ai = ScriptedAI(VALID, refined("Q?", "B"), "A or B", "A, a or B")

    outcome = make_pipeline(ai).submit("A", "Q?", "B", 0)

    assert outcome.merged is True
    record = fake_supabase.rows("questions")[0]
    assert len(record["submissions"]) == 3
    assert record["master_answer"] == "A, a or B"
    assert record["version"] == 3


def test_store_failure_on_create_releases_index_claim(make_pipeline, fake_supabase):
    fake_supabase.fail_on.add(("questions", "insert"))

    with pytest.raises(StoreUnavailable):
        make_pipeline(ScriptedAI(VALID, refined("Q?", "A"))).submit("A", "Q?", "A", 2)

    assert fake_supabase.rows("question_index") == []
    assert fake_supabase.rows("invite_codes") == []


def test_invite_registry_failure_persists_nothing(make_pipeline, fake_supabase):
    fake_supabase.fail_on.add(("invite_codes", "insert"))

    with pytest.raises(StoreUnavailable):
        make_pipeline(ScriptedAI(VALID, refined("Q?", "A"))).submit("A", "Q?", "A", 2)

    assert fake_supabase.rows("questions") == []
    assert fake_supabase.rows("question_index") == []


def test_failed_merge_withdraws_the_issued_invite_code(make_pipeline, fake_supabase, clock):
    _seed_question(fake_supabase, "q-seed", "Q?", "A", clock())
    fake_supabase.fail_on.add(("questions", "update"))
    ai = ScriptedAI(VALID, refined("Q?", "B"), "A or B")

    with pytest.raises(StoreUnavailable):
        make_pipeline(ai).submit("A", "Q?", "B", 5)

    assert fake_supabase.rows("invite_codes") == []
    assert len(fake_supabase.rows("questions")[0]["submissions"]) == 1
