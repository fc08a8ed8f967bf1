"""Journal entries of authenticated users.

Entries live in the backend's ``reflections`` table, where the title and the
body are stored as ``question_text`` and ``answer_text``.  Every request is
made with the user's own access token and additionally filtered by
``user_id`` so one user can never read another user's rows.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .errors import NotFoundError, UnauthorizedError, UpstreamFailureError, ValidationFailedError
from .models import (
    AuthenticatedUser,
    JournalEntry,
    JournalEntryCreate,
    JournalEntryList,
    JournalEntryUpdate,
    JournalStats,
    Mindset,
    Pagination,
)
from .supabase_client import SupabaseClient, SupabaseError


REFLECTIONS_TABLE = "reflections"
DEFAULT_REFLECTION_TYPE = "journal"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50
STATS_COLUMNS = "id,answer_text,mindset,reflection_type,created_at,tags"
STATS_FUNCTION = "get_journal_stats"

_LOGGER = logging.getLogger("renewed.journal")
# Characters with a meaning inside PostgREST ``or=(...)`` expressions
_SEARCH_UNSAFE = re.compile(r"[,()*]")


def _clean_tags(tags: Optional[Iterable[Any]]) -> List[str]:
    if not tags:
        return []
    return [tag for tag in tags if isinstance(tag, str) and tag]


def _parse_mindset(value: Optional[str]) -> Optional[Mindset]:
    if value is None:
        return None
    try:
        return Mindset(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in Mindset)
        raise ValidationFailedError(
            f"Invalid mindset '{value}'. Expected one of: {allowed}"
        ) from exc


def _entry_from_row(row: Dict[str, Any]) -> JournalEntry:
    mindset = row.get("mindset")
    if mindset not in {m.value for m in Mindset}:
        mindset = None
    return JournalEntry(
        id=str(row["id"]),
        title=row.get("question_text") or "",
        content=row.get("answer_text") or "",
        tags=_clean_tags(row.get("tags")),
        reflection_type=row.get("reflection_type"),
        mindset=mindset,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JournalService:
    def __init__(
        self,
        *,
        client: SupabaseClient | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _require_client(self) -> SupabaseClient:
        if self._client is None:
            raise UpstreamFailureError("Journal backend is not configured")
        return self._client

    @staticmethod
    def _require_user(user: AuthenticatedUser | None) -> AuthenticatedUser:
        if user is None:
            raise UnauthorizedError("Unauthorized")
        return user

    @staticmethod
    def _check_entry_id(entry_id: str) -> str:
        if not isinstance(entry_id, str) or not entry_id.strip():
            raise ValidationFailedError("Invalid entry ID")
        return entry_id.strip()

    def list_entries(
        self,
        user: AuthenticatedUser | None,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        search: str | None = None,
        reflection_type: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> JournalEntryList:
        user = self._require_user(user)
        if page < 1:
            raise ValidationFailedError("Page must be a positive integer")
        limit = min(max(1, limit), MAX_PAGE_SIZE)

        filters: Dict[str, Any] = {"user_id": user.id}
        if reflection_type:
            filters["reflection_type"] = reflection_type
        extra: Dict[str, str] = {}
        term = _SEARCH_UNSAFE.sub(" ", search or "").strip()
        if term:
            extra["or"] = f"(question_text.ilike.*{term}*,answer_text.ilike.*{term}*)"
        tag_list = _clean_tags(tags)
        if tag_list:
            extra["tags"] = "ov.{" + ",".join(tag_list) + "}"

        client = self._require_client()
        try:
            rows = client.select(
                REFLECTIONS_TABLE,
                filters=filters,
                extra=extra,
                order="created_at",
                ascending=False,
                limit=limit,
                offset=(page - 1) * limit,
                access_token=user.access_token,
            )
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to fetch journal entries") from exc

        entries = [_entry_from_row(row) for row in rows or []]
        return JournalEntryList(
            entries=entries,
            pagination=Pagination(page=page, limit=limit, has_more=len(entries) == limit),
        )

    def create_entry(
        self, user: AuthenticatedUser | None, payload: JournalEntryCreate
    ) -> JournalEntry:
        user = self._require_user(user)
        if not payload.title or not payload.title.strip():
            raise ValidationFailedError("Title is required")
        if not payload.content or not payload.content.strip():
            raise ValidationFailedError("Content is required")
        mindset = _parse_mindset(payload.mindset)

        row: Dict[str, Any] = {
            "user_id": user.id,
            "question_text": payload.title.strip(),
            "answer_text": payload.content.strip(),
            "reflection_type": payload.reflection_type or DEFAULT_REFLECTION_TYPE,
            "tags": _clean_tags(payload.tags),
        }
        if mindset is not None:
            row["mindset"] = mindset.value

        client = self._require_client()
        try:
            created = client.insert(REFLECTIONS_TABLE, row, access_token=user.access_token)
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to create journal entry") from exc
        _LOGGER.info("Journal entry %s created", created.get("id"))
        return _entry_from_row(created)

    def get_entry(self, user: AuthenticatedUser | None, entry_id: str) -> JournalEntry:
        user = self._require_user(user)
        entry_id = self._check_entry_id(entry_id)
        client = self._require_client()
        try:
            row = client.select(
                REFLECTIONS_TABLE,
                filters={"id": entry_id, "user_id": user.id},
                single=True,
                access_token=user.access_token,
            )
        except SupabaseError as exc:
            if exc.is_not_found:
                raise NotFoundError("Journal entry not found") from exc
            raise UpstreamFailureError("Failed to fetch journal entry") from exc
        return _entry_from_row(row)

    def update_entry(
        self, user: AuthenticatedUser | None, entry_id: str, payload: JournalEntryUpdate
    ) -> JournalEntry:
        user = self._require_user(user)
        entry_id = self._check_entry_id(entry_id)
        provided = payload.model_fields_set

        fields: Dict[str, Any] = {}
        if "title" in provided:
            if not payload.title or not payload.title.strip():
                raise ValidationFailedError("Title cannot be empty")
            fields["question_text"] = payload.title.strip()
        if "content" in provided:
            if not payload.content or not payload.content.strip():
                raise ValidationFailedError("Content cannot be empty")
            fields["answer_text"] = payload.content.strip()
        if "reflection_type" in provided:
            fields["reflection_type"] = payload.reflection_type
        if "tags" in provided:
            fields["tags"] = _clean_tags(payload.tags)
        if "mindset" in provided:
            mindset = _parse_mindset(payload.mindset)
            fields["mindset"] = mindset.value if mindset is not None else None
        if not fields:
            raise ValidationFailedError("No fields to update")

        client = self._require_client()
        try:
            row = client.update(
                REFLECTIONS_TABLE,
                fields,
                filters={"id": entry_id, "user_id": user.id},
                access_token=user.access_token,
            )
        except SupabaseError as exc:
            if exc.is_not_found:
                raise NotFoundError("Journal entry not found") from exc
            raise UpstreamFailureError("Failed to update journal entry") from exc
        return _entry_from_row(row)

    def delete_entry(self, user: AuthenticatedUser | None, entry_id: str) -> None:
        user = self._require_user(user)
        entry_id = self._check_entry_id(entry_id)
        client = self._require_client()
        try:
            deleted = client.delete(
                REFLECTIONS_TABLE,
                filters={"id": entry_id, "user_id": user.id},
                access_token=user.access_token,
            )
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to delete journal entry") from exc
        if not deleted:
            raise NotFoundError("Journal entry not found")
        _LOGGER.info("Journal entry %s deleted", entry_id)

    def stats(self, user: AuthenticatedUser | None) -> JournalStats:
        """Statistics from the ``get_journal_stats`` function, computed here if it fails."""

        user = self._require_user(user)
        client = self._require_client()
        try:
            result = client.rpc(STATS_FUNCTION, access_token=user.access_token)
            if isinstance(result, list):
                result = result[0] if result else None
            return JournalStats.model_validate(result or {})
        except (SupabaseError, ValidationError) as exc:
            _LOGGER.warning("Stats function unavailable, calculating manually: %s", exc)

        try:
            rows = client.select(
                REFLECTIONS_TABLE,
                columns=STATS_COLUMNS,
                filters={"user_id": user.id},
                access_token=user.access_token,
            ) or []
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to fetch statistics") from exc

        now = self._now()
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)
        created = [ts for ts in (_parse_timestamp(row.get("created_at")) for row in rows) if ts]
        lengths = [len(row.get("answer_text") or "") for row in rows]
        mindset_counts = {m.value: 0 for m in Mindset}
        for row in rows:
            if row.get("mindset") in mindset_counts:
                mindset_counts[row["mindset"]] += 1

        return JournalStats(
            total_entries=len(rows),
            entries_this_week=sum(1 for ts in created if ts >= week_ago),
            entries_this_month=sum(1 for ts in created if ts >= month_ago),
            average_content_length=round(sum(lengths) / len(lengths)) if lengths else 0,
            mindset_counts=mindset_counts,
            first_entry=min(created).isoformat() if created else None,
            latest_entry=max(created).isoformat() if created else None,
        )
