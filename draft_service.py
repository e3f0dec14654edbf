from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func

from models import DraftSelection, Guardian, ScheduleDraft, ScheduleDraftEntry
from slot_keys import normalize_period, period_rank, slot_key

DRAFT_EDITOR_ROLES = {"admin", "moderator"}

logger = logging.getLogger(__name__)


class DraftManager:
    """Per-user, per-session named schedule drafts.

    Entries inside a draft are keyed by slot; saving replaces the whole set.
    """

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def create_draft(
        self,
        session_id: str,
        creator_id: str,
        name: str,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValueError("Draft name is required")
        now = datetime.utcnow()
        with self._session_factory() as session:
            session.query(ScheduleDraft).filter(
                ScheduleDraft.session_id == session_id,
                ScheduleDraft.created_by == creator_id,
                ScheduleDraft.is_active.is_(True),
            ).update({ScheduleDraft.is_active: False}, synchronize_session=False)
            draft = ScheduleDraft(
                session_id=session_id,
                created_by=creator_id,
                name=name,
                description=(description or "").strip() or None,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            session.add(draft)
            session.commit()
            creator = session.get(Guardian, creator_id)
            result = self._draft_to_dict(draft, creator, entry_count=0)
        logger.info("Created draft %s for session %s by %s", result["id"], session_id, creator_id)
        return result

    def list_drafts(self, session_id: str, creator_id: Optional[str] = None) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            counts = (
                session.query(
                    ScheduleDraftEntry.draft_id.label("draft_id"),
                    func.count(ScheduleDraftEntry.id).label("entry_count"),
                )
                .group_by(ScheduleDraftEntry.draft_id)
                .subquery()
            )
            query = (
                session.query(ScheduleDraft, Guardian, counts.c.entry_count)
                .outerjoin(Guardian, ScheduleDraft.created_by == Guardian.id)
                .outerjoin(counts, counts.c.draft_id == ScheduleDraft.id)
                .filter(ScheduleDraft.session_id == session_id)
            )
            if creator_id:
                query = query.filter(ScheduleDraft.created_by == creator_id)
            rows = query.order_by(
                ScheduleDraft.updated_at.desc(),
                ScheduleDraft.created_at.desc(),
            ).all()
        return [
            self._draft_to_dict(draft, creator, entry_count=entry_count or 0)
            for draft, creator, entry_count in rows
        ]

    def get_draft(self, draft_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as session:
            row = (
                session.query(ScheduleDraft, Guardian)
                .outerjoin(Guardian, ScheduleDraft.created_by == Guardian.id)
                .filter(ScheduleDraft.id == draft_id)
                .one_or_none()
            )
            if not row:
                return None
            draft, creator = row
            entry_count = (
                session.query(func.count(ScheduleDraftEntry.id))
                .filter(ScheduleDraftEntry.draft_id == draft_id)
                .scalar()
            )
        return self._draft_to_dict(draft, creator, entry_count=entry_count or 0)

    def load_draft(self, draft_id: str) -> dict[str, Any]:
        draft = self.get_draft(draft_id)
        if not draft:
            raise LookupError("Draft not found")
        with self._session_factory() as session:
            entries = (
                session.query(ScheduleDraftEntry)
                .filter(ScheduleDraftEntry.draft_id == draft_id)
                .all()
            )
        entries.sort(key=lambda entry: (period_rank(entry.period), entry.classroom_id))
        return {"draft": draft, "entries": [self._entry_to_dict(entry) for entry in entries]}

    def assert_can_modify(self, draft_id: str, user_id: str, role: Optional[str]) -> dict[str, Any]:
        draft = self.get_draft(draft_id)
        if not draft:
            raise LookupError("Draft not found")
        if draft["createdBy"] != user_id and role != "admin":
            raise PermissionError("Permission denied")
        return draft

    def save_draft_entries(self, draft_id: str, entries: Iterable[dict[str, Any]]) -> int:
        by_slot: dict[str, dict[str, str]] = {}
        for raw in entries or []:
            cleaned = self._clean_entry(raw)
            by_slot[slot_key(cleaned["classroom_id"], cleaned["period"])] = cleaned
        now = datetime.utcnow()
        with self._session_factory() as session:
            draft = session.get(ScheduleDraft, draft_id)
            if not draft:
                raise LookupError("Draft not found")
            session.query(ScheduleDraftEntry).filter(
                ScheduleDraftEntry.draft_id == draft_id
            ).delete(synchronize_session=False)
            session.add_all(
                [
                    ScheduleDraftEntry(draft_id=draft_id, created_at=now, **cleaned)
                    for cleaned in by_slot.values()
                ]
            )
            draft.updated_at = now
            session.commit()
        logger.info("Saved %s entries to draft %s", len(by_slot), draft_id)
        return len(by_slot)

    def delete_draft(self, draft_id: str) -> bool:
        with self._session_factory() as session:
            draft = session.get(ScheduleDraft, draft_id)
            if not draft:
                return False
            session.query(DraftSelection).filter(
                DraftSelection.last_opened_draft_id == draft_id
            ).update({DraftSelection.last_opened_draft_id: None}, synchronize_session=False)
            session.query(ScheduleDraftEntry).filter(
                ScheduleDraftEntry.draft_id == draft_id
            ).delete(synchronize_session=False)
            session.delete(draft)
            session.commit()
        logger.info("Deleted draft %s", draft_id)
        return True

    def set_active_draft(self, draft_id: str, user_id: str) -> None:
        now = datetime.utcnow()
        with self._session_factory() as session:
            draft = session.get(ScheduleDraft, draft_id)
            if not draft:
                raise LookupError("Draft not found")
            session.query(ScheduleDraft).filter(
                ScheduleDraft.created_by == user_id,
                ScheduleDraft.session_id == draft.session_id,
                ScheduleDraft.id != draft_id,
                ScheduleDraft.is_active.is_(True),
            ).update({ScheduleDraft.is_active: False}, synchronize_session=False)
            draft.is_active = True
            draft.updated_at = now
            session.commit()

    def open_draft(self, draft_id: str, user_id: str) -> dict[str, Any]:
        """Remember which draft this user last opened for the draft's session."""
        with self._session_factory() as session:
            draft = session.get(ScheduleDraft, draft_id)
            if not draft:
                raise LookupError("Draft not found")
            selection = (
                session.query(DraftSelection)
                .filter(
                    DraftSelection.user_id == user_id,
                    DraftSelection.session_id == draft.session_id,
                )
                .one_or_none()
            )
            if not selection:
                selection = DraftSelection(user_id=user_id, session_id=draft.session_id)
                session.add(selection)
            selection.last_opened_draft_id = draft_id
            selection.opened_at = datetime.utcnow()
            session.commit()
        return self.load_draft(draft_id)

    def current_draft(self, session_id: str, user_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as session:
            selection = (
                session.query(DraftSelection)
                .filter(
                    DraftSelection.user_id == user_id,
                    DraftSelection.session_id == session_id,
                )
                .one_or_none()
            )
            selected_id = selection.last_opened_draft_id if selection else None
        if selected_id:
            draft = self.get_draft(selected_id)
            if draft:
                return draft
        drafts = self.list_drafts(session_id, creator_id=user_id)
        for draft in drafts:
            if draft["isActive"]:
                return draft
        return drafts[0] if drafts else None

    @staticmethod
    def _clean_entry(raw: dict[str, Any]) -> dict[str, str]:
        if not isinstance(raw, dict):
            raise ValueError("draft entries must be objects")
        class_request_id = raw.get("classTeachingRequestId") or raw.get("class_teaching_request_id")
        classroom_id = raw.get("classroomId") or raw.get("classroom_id")
        period = normalize_period(raw.get("period"))
        if not class_request_id or not classroom_id:
            raise ValueError("draft entries need classTeachingRequestId and classroomId")
        if not period:
            raise ValueError(f"invalid period '{raw.get('period')}'")
        return {
            "class_teaching_request_id": str(class_request_id),
            "classroom_id": str(classroom_id),
            "period": period,
        }

    @staticmethod
    def _draft_to_dict(draft: ScheduleDraft, creator: Optional[Guardian], entry_count: int) -> dict[str, Any]:
        return {
            "id": draft.id,
            "sessionId": draft.session_id,
            "createdBy": draft.created_by,
            "creatorName": creator.display_name if creator else "",
            "name": draft.name,
            "description": draft.description,
            "isActive": bool(draft.is_active),
            "entryCount": int(entry_count),
            "createdAt": draft.created_at.isoformat() if draft.created_at else None,
            "updatedAt": draft.updated_at.isoformat() if draft.updated_at else None,
        }

    @staticmethod
    def _entry_to_dict(entry: ScheduleDraftEntry) -> dict[str, Any]:
        return {
            "id": entry.id,
            "draftId": entry.draft_id,
            "classTeachingRequestId": entry.class_teaching_request_id,
            "classroomId": entry.classroom_id,
            "period": entry.period,
            "slotKey": slot_key(entry.classroom_id, entry.period),
        }
