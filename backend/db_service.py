"""
Persistence gateway for parsed timetables.

The parser only talks to the PersistenceGateway interface. SupabaseGateway
stores everything in Supabase; InMemoryGateway keeps it in dictionaries for
dry runs of the command line tool.
"""

import copy
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from supabase import create_client

from config import ConfigurationError, Settings
from scraper.models import SessionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceGateway:
    """Idempotent upserts keyed by natural identity, plus a session replace.

    Every ensure_* call returns the id of the existing row or creates it.
    Reference rows are never updated except a course's latest_check.
    """

    def ensure_course(self, code: str, grade: int, now: datetime, project: str = "") -> int:
        raise NotImplementedError

    def update_course_last_checked(self, code: str, grade: int, now: datetime, project: str = "") -> int:
        """Stamp latest_check. Raises LookupError for an unknown course."""
        raise NotImplementedError

    def ensure_class(self, name: str, course_id: int) -> int:
        raise NotImplementedError

    def ensure_room(self, code: str) -> int:
        raise NotImplementedError

    def ensure_instructor(self, name: str) -> int:
        raise NotImplementedError

    def ensure_group(self, name: str, course_id: int) -> int:
        raise NotImplementedError

    def delete_sessions_for_course(self, course_id: int) -> None:
        raise NotImplementedError

    def add_sessions(self, sessions: list[SessionRecord]) -> None:
        raise NotImplementedError

    def run_in_transaction(self, action: Callable[[], T]) -> T:
        """Run action atomically: either all of its writes land or none do."""
        raise NotImplementedError


def session_to_row(session: SessionRecord) -> dict:
    row = asdict(session)
    row["start_at"] = session.start_at.astimezone(timezone.utc).isoformat()
    row["finish_at"] = session.finish_at.astimezone(timezone.utc).isoformat()
    row["type"] = session.type.value
    return row


class _SessionBatch:
    """Session writes collected inside run_in_transaction."""

    def __init__(self):
        self.deleted_course_ids: list[int] = []
        self.inserted: list[dict] = []


class SupabaseGateway(PersistenceGateway):
    """Gateway backed by Supabase tables (see sql/schema.sql).

    PostgREST has no client-side transactions, so session writes made inside
    run_in_transaction are buffered and applied by the replace_course_sessions
    database function, which runs as one transaction.
    """

    REPLACE_FUNCTION = "replace_course_sessions"

    def __init__(self, client):
        self.supabase = client
        self._batch: Optional[_SessionBatch] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseGateway":
        if not settings.supabase_url or not settings.supabase_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_key))

    def _find_id(self, table: str, **filters) -> Optional[int]:
        query = self.supabase.table(table).select("id")
        for column, value in filters.items():
            query = query.eq(column, value)
        response = query.limit(1).execute()
        if response.data:
            return response.data[0]["id"]
        return None

    def _ensure(self, table: str, **values) -> int:
        existing = self._find_id(table, **values)
        if existing is not None:
            return existing
        response = self.supabase.table(table).insert(values).execute()
        return response.data[0]["id"]

    def ensure_course(self, code: str, grade: int, now: datetime, project: str = "") -> int:
        existing = self._find_id("courses", code=code, grade=grade, project=project)
        if existing is not None:
            return existing

        response = self.supabase.table("courses").insert({
            "code": code,
            "grade": grade,
            "project": project,
            "latest_check": now.astimezone(timezone.utc).isoformat(),
        }).execute()
        logger.info(f"Created course {code}-{grade} (project='{project}')")
        return response.data[0]["id"]

    def update_course_last_checked(self, code: str, grade: int, now: datetime, project: str = "") -> int:
        course_id = self._find_id("courses", code=code, grade=grade, project=project)
        if course_id is None:
            raise LookupError(f"Course with code {code} and grade {grade} doesn't exist.")

        self.supabase.table("courses").update({
            "latest_check": now.astimezone(timezone.utc).isoformat(),
        }).eq("id", course_id).execute()
        return course_id

    def ensure_class(self, name: str, course_id: int) -> int:
        return self._ensure("classes", name=name, course_id=course_id)

    def ensure_room(self, code: str) -> int:
        return self._ensure("rooms", code=code, building=code)

    def ensure_instructor(self, name: str) -> int:
        return self._ensure("instructors", name=name)

    def ensure_group(self, name: str, course_id: int) -> int:
        return self._ensure("groups", name=name, course_id=course_id)

    def delete_sessions_for_course(self, course_id: int) -> None:
        if self._batch is not None:
            self._batch.deleted_course_ids.append(course_id)
            return
        logger.info(f"Deleting existing sessions for courseId={course_id}")
        self.supabase.table("sessions").delete().eq("course_id", course_id).execute()

    def add_sessions(self, sessions: list[SessionRecord]) -> None:
        rows = [session_to_row(s) for s in sessions]
        if self._batch is not None:
            self._batch.inserted.extend(rows)
            return
        logger.info(f"Adding {len(rows)} new sessions")
        if rows:
            self.supabase.table("sessions").insert(rows).execute()

    def run_in_transaction(self, action: Callable[[], T]) -> T:
        if self._batch is not None:
            # Nested call joins the outer transaction
            return action()

        self._batch = _SessionBatch()
        logger.info("DB transaction begin")
        try:
            result = action()
            batch = self._batch
            logger.info(
                f"Replacing sessions for courseIds={batch.deleted_course_ids} "
                f"with {len(batch.inserted)} new sessions"
            )
            self.supabase.rpc(self.REPLACE_FUNCTION, {
                "p_course_ids": batch.deleted_course_ids,
                "p_sessions": batch.inserted,
            }).execute()
        except Exception:
            logger.warning("DB transaction rolled back")
            raise
        finally:
            self._batch = None

        logger.info("DB transaction committed")
        return result


class InMemoryGateway(PersistenceGateway):
    """Dictionary-backed gateway. Transactions snapshot and restore state."""

    def __init__(self):
        self.courses: dict[tuple, dict] = {}
        self.classes: dict[tuple, int] = {}
        self.rooms: dict[str, int] = {}
        self.instructors: dict[str, int] = {}
        self.groups: dict[tuple, int] = {}
        self.sessions: list[SessionRecord] = []
        self._next_id = 1
        self._in_transaction = False

    def _new_id(self) -> int:
        new_id = self._next_id
        self._next_id += 1
        return new_id

    def _upsert(self, table: dict, key) -> int:
        if key not in table:
            table[key] = self._new_id()
        return table[key]

    def ensure_course(self, code: str, grade: int, now: datetime, project: str = "") -> int:
        key = (code, grade, project)
        if key not in self.courses:
            self.courses[key] = {"id": self._new_id(), "latest_check": now}
        return self.courses[key]["id"]

    def update_course_last_checked(self, code: str, grade: int, now: datetime, project: str = "") -> int:
        course = self.courses.get((code, grade, project))
        if course is None:
            raise LookupError(f"Course with code {code} and grade {grade} doesn't exist.")
        course["latest_check"] = now
        return course["id"]

    def ensure_class(self, name: str, course_id: int) -> int:
        return self._upsert(self.classes, (name, course_id))

    def ensure_room(self, code: str) -> int:
        return self._upsert(self.rooms, code)

    def ensure_instructor(self, name: str) -> int:
        return self._upsert(self.instructors, name)

    def ensure_group(self, name: str, course_id: int) -> int:
        return self._upsert(self.groups, (name, course_id))

    def delete_sessions_for_course(self, course_id: int) -> None:
        self.sessions = [s for s in self.sessions if s.course_id != course_id]

    def add_sessions(self, sessions: list[SessionRecord]) -> None:
        for session in sessions:
            self.sessions.append(session)

    def sessions_for_course(self, course_id: int) -> list[SessionRecord]:
        return [s for s in self.sessions if s.course_id == course_id]

    def run_in_transaction(self, action: Callable[[], T]) -> T:
        if self._in_transaction:
            return action()

        snapshot = copy.deepcopy(self.__dict__)
        self._in_transaction = True
        try:
            result = action()
        except Exception:
            self.__dict__.update(snapshot)
            logger.warning("DB transaction rolled back")
            raise
        finally:
            self._in_transaction = False
        return result
