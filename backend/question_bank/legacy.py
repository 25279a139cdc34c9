"""Migration of the legacy append-only question list into records and the index.

Legacy blobs carry ``ruang`` (room), ``soal``/``soal_asli`` (refined and raw
question) and ``jawaban``/``jawaban_asli`` (refined and raw answer). Blobs are
grouped by normalized question; the newest refined answer of a group becomes
its master answer. No AI calls are made. Re-running is safe: a submission
whose original question, original answer and refined answer already appear
on the record is not appended again. Blobs without a usable timestamp are
stamped with the migration time but never replace an existing master answer.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from supabase import Client

from .store import (
    DuplicateIndex,
    QuestionRecord,
    QuestionStore,
    StaleRecord,
    SubmissionEntry,
    iter_legacy_blobs,
)
from .utils import normalize_question_key

logger = logging.getLogger(__name__)


@dataclass
class LegacyGroup:
    question_id: str
    room: str
    question: str
    entries: List[SubmissionEntry] = field(default_factory=list)
    undated: Set[SubmissionEntry] = field(default_factory=set)

    @property
    def master_answer(self) -> str:
        return self.entries[-1].refined_answer


@dataclass
class MigrationReport:
    created: int = 0
    merged: int = 0
    skipped: int = 0
    unchanged: int = 0


def _entry_identity(entry: SubmissionEntry) -> Tuple[str, str, str]:
    return (entry.original_question, entry.original_answer, entry.refined_answer)


def _blob_timestamp(blob: dict[str, Any]) -> Optional[dt.datetime]:
    raw = blob.get("timestamp")
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def group_legacy_blobs(
    blobs: Iterable[dict[str, Any]],
    *,
    now: dt.datetime,
    report: MigrationReport | None = None,
) -> Dict[str, LegacyGroup]:
    groups: Dict[str, LegacyGroup] = {}
    for blob in blobs:
        question = (blob.get("soal") or blob.get("soal_asli") or "").strip()
        answer = (blob.get("jawaban") or blob.get("jawaban_asli") or "").strip()
        room = (blob.get("ruang") or "").strip()
        if not question or not answer or not room:
            logger.warning("Skipping incomplete legacy blob %s", blob.get("id"))
            if report is not None:
                report.skipped += 1
            continue

        timestamp = _blob_timestamp(blob)
        entry = SubmissionEntry(
            timestamp=timestamp or now,
            original_question=(blob.get("soal_asli") or question).strip(),
            original_answer=(blob.get("jawaban_asli") or answer).strip(),
            refined_answer=answer,
        )
        key = normalize_question_key(question)
        group = groups.get(key)
        if group is None:
            group = LegacyGroup(
                question_id=str(blob.get("id") or uuid.uuid4()),
                room=room,
                question=question,
            )
            groups[key] = group
        group.entries.append(entry)
        if timestamp is None:
            group.undated.add(entry)
    return groups


def migrate_legacy_questions(
    client: Client,
    *,
    dry_run: bool = False,
    clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.timezone.utc),
) -> MigrationReport:
    report = MigrationReport()
    groups = group_legacy_blobs(iter_legacy_blobs(client), now=clock(), report=report)
    index = DuplicateIndex(client)
    store = QuestionStore(client)

    for key, group in groups.items():
        existing = index.lookup(key)
        record = store.get(existing.question_id) if existing else None

        if record is None:
            if existing is not None and not dry_run:
                logger.warning("Dropping dangling index entry for %r", key)
                index.release(key, existing.question_id)
            new_record = QuestionRecord(
                id=group.question_id,
                room=group.room,
                master_question=group.question,
                master_answer=group.master_answer,
                created_at=min(entry.timestamp for entry in group.entries),
                submissions=list(group.entries),
            )
            if not dry_run:
                if not index.claim(key, new_record.id, clock()):
                    logger.warning("Index key %r was claimed during migration; skipping", key)
                    report.skipped += 1
                    continue
                store.create(new_record)
            report.created += 1
            continue

        known = {_entry_identity(entry) for entry in record.submissions}
        fresh = []
        for entry in group.entries:
            if _entry_identity(entry) not in known:
                known.add(_entry_identity(entry))
                fresh.append(entry)
        if not fresh:
            report.unchanged += 1
            continue
        updated = record
        newest = max(entry.timestamp for entry in record.submissions) if record.submissions else None
        for entry in fresh:
            master_answer = updated.master_answer
            if entry not in group.undated and (newest is None or entry.timestamp >= newest):
                master_answer = entry.refined_answer
                newest = entry.timestamp
            updated = updated.with_submission(entry, master_answer)
        if not dry_run:
            try:
                store.update(updated)
            except StaleRecord:
                logger.warning("Question %s changed during migration; skipping %r", record.id, key)
                report.skipped += 1
                continue
        report.merged += 1

    logger.info(
        "Legacy migration %s: %d created, %d merged, %d unchanged, %d skipped",
        "dry run" if dry_run else "done",
        report.created,
        report.merged,
        report.unchanged,
        report.skipped,
    )
    return report
