from __future__ import annotations

from typing import Any, Callable

from models import ClassTeachingRequest, Guardian, ScheduleDraft, ScheduleDraftEntry
from slot_keys import parse_slot_key, period_rank, slot_key


class DraftConflictDetector:
    """Reports every classroom/period slot claimed by more than one draft.

    Read-only: nothing is merged or resolved, conflicts are for human review.
    """

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def _entries_for_session(self, session_id: str) -> list[dict[str, Any]]:
        # Inner joins drop entries whose draft or class has disappeared.
        with self._session_factory() as session:
            rows = (
                session.query(ScheduleDraftEntry, ScheduleDraft, ClassTeachingRequest, Guardian)
                .join(ScheduleDraft, ScheduleDraftEntry.draft_id == ScheduleDraft.id)
                .join(
                    ClassTeachingRequest,
                    ScheduleDraftEntry.class_teaching_request_id == ClassTeachingRequest.id,
                )
                .outerjoin(Guardian, ScheduleDraft.created_by == Guardian.id)
                .filter(ScheduleDraft.session_id == session_id)
                .all()
            )
        return [
            {
                "classroom_id": entry.classroom_id,
                "period": entry.period,
                "draftId": draft.id,
                "draftName": draft.name,
                "creatorName": creator.display_name if creator else "Unknown",
                "classTeachingRequestId": entry.class_teaching_request_id,
                "className": class_request.class_name,
            }
            for entry, draft, class_request, creator in rows
        ]

    def detect(self, session_id: str) -> list[dict[str, Any]]:
        slots: dict[str, list[dict[str, Any]]] = {}
        for entry in self._entries_for_session(session_id):
            key = slot_key(entry.pop("classroom_id"), entry.pop("period"))
            slots.setdefault(key, []).append(entry)
        conflicts: list[dict[str, Any]] = []
        for key, claims in slots.items():
            if len({claim["draftId"] for claim in claims}) < 2:
                continue
            classroom_id, period = parse_slot_key(key)
            claims.sort(key=lambda claim: (claim["draftName"] or "", claim["draftId"]))
            conflicts.append(
                {
                    "slotKey": key,
                    "classroomId": classroom_id,
                    "period": period,
                    "conflictingDrafts": claims,
                }
            )
        conflicts.sort(key=lambda conflict: (period_rank(conflict["period"]), conflict["classroomId"]))
        return conflicts
