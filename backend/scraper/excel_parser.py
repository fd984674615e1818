"""
Timetable worksheet parser.

The export is one long table. A row whose first cell is the header marker
("Dan") starts a new class; the class name sits in the first cell of the
row above it. Rows whose first cell is a weekday are sessions:

    weekday | date | time range | room | type code | group list | instructor

Everything else (blank lines, notes, repeated headers) is skipped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from config import Settings
from scraper.date_helpers import parse_time_range
from scraper.excel_cleanup import clear_failed, load_worksheet, mark_failed, normalize
from scraper.group_parsing import groups_for_target
from scraper.models import (
    SESSION_TYPE_CODES,
    FileUpdated,
    Fetched,
    ParseStats,
    SessionRecord,
    SessionType,
)

logger = logging.getLogger(__name__)

DAY_COL = 0
DATE_COL = 1
TIME_COL = 2
ROOM_COL = 3
TYPE_COL = 4
GROUPS_COL = 5
INSTRUCTOR_COL = 6


class RowParseError(ValueError):
    """A session row is missing a mandatory value or has a malformed one."""


class RowKind(Enum):
    HEADER = "header"
    SESSION = "session"
    IGNORABLE = "ignorable"


@dataclass
class ParseState:
    """The only state carried from one row to the next."""
    current_class_id: Optional[int] = None
    current_class_name: str = ""
    stats: ParseStats = field(default_factory=ParseStats)


def cell_text(row, col: int) -> str:
    if row is None or col >= len(row) or row[col] is None:
        return ""
    return row[col].text().strip()


def classify_row(row, settings: Settings) -> RowKind:
    first = cell_text(row, DAY_COL)
    if first == settings.class_header_marker:
        return RowKind.HEADER
    if first in settings.weekday_names:
        return RowKind.SESSION
    return RowKind.IGNORABLE


def session_type_from_code(raw: str) -> SessionType:
    """Map the first token of the type cell ("RV 1" -> "RV") to a SessionType."""
    tokens = (raw or "").split()
    if not tokens:
        return SessionType.OTHER
    return SESSION_TYPE_CODES.get(tokens[0], SessionType.OTHER)


def _required(row, col: int, name: str) -> str:
    value = cell_text(row, col)
    if not value:
        raise RowParseError(f"Missing {name} (column {col})")
    return value


class SessionExtractor:
    """Walks normalized rows once and builds the session list for one target."""

    def __init__(self, gateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def extract(self, rows: Sequence, course_id: int, group_label: str) -> tuple[list[SessionRecord], ParseStats]:
        state = ParseState()
        stats = state.stats
        sessions: list[SessionRecord] = []

        for index in range(max(self.settings.header_row, 0), len(rows)):
            row = rows[index]
            stats.total_rows += 1
            kind = classify_row(row, self.settings)

            if kind is RowKind.HEADER:
                self._enter_class(rows, index, course_id, state)
                continue

            if kind is RowKind.SESSION:
                if state.current_class_id is None:
                    stats.skipped_no_class += 1
                    continue

                stats.session_rows_considered += 1
                try:
                    row_sessions = self._parse_session_row(row, course_id, group_label, state)
                except ValueError as e:
                    stats.row_errors += 1
                    logger.warning(
                        f"[{index}] Failed to parse session row. Day='{cell_text(row, DAY_COL)}', "
                        f"Class='{state.current_class_name}': {e}"
                    )
                    continue

                sessions.extend(row_sessions)
                stats.sessions_parsed += len(row_sessions)
                continue

            if state.current_class_id is None:
                stats.skipped_no_class += 1
            else:
                stats.skipped_unrecognized += 1

        return sessions, stats

    def _enter_class(self, rows: Sequence, index: int, course_id: int, state: ParseState) -> None:
        state.stats.header_markers += 1
        class_name = cell_text(rows[index - 1], DAY_COL) if index > 0 else ""

        if not class_name:
            state.stats.row_errors += 1
            state.current_class_id = None
            state.current_class_name = ""
            logger.warning(f"[{index}] Class header without a class name above it, rows below are skipped")
            return

        state.current_class_id = self.gateway.ensure_class(class_name, course_id)
        state.current_class_name = class_name
        logger.info(f"[{index}] Found class header. ClassName='{class_name}', Id={state.current_class_id}")

    def _date_text(self, row) -> str:
        """Date cell as text in the configured layout (xlrd hands date cells over as datetime)."""
        cell = row[DATE_COL] if DATE_COL < len(row) else None
        if cell is not None and isinstance(cell.value, datetime):
            return cell.value.strftime(self.settings.date_format)
        return cell_text(row, DATE_COL)

    def _parse_session_row(self, row, course_id: int, group_label: str, state: ParseState) -> list[SessionRecord]:
        start_at, finish_at = parse_time_range(
            self._date_text(row),
            cell_text(row, TIME_COL),
            self.settings.date_format,
            self.settings.portal_timezone,
        )
        room = _required(row, ROOM_COL, "room")
        session_type = session_type_from_code(_required(row, TYPE_COL, "session type"))
        instructor = _required(row, INSTRUCTOR_COL, "instructor")

        group_names = groups_for_target(cell_text(row, GROUPS_COL), group_label, session_type)
        if not group_names:
            return []

        room_id = self.gateway.ensure_room(room)
        instructor_id = self.gateway.ensure_instructor(instructor)

        records = []
        for group_name in group_names:
            group_id = self.gateway.ensure_group(group_name, course_id)
            records.append(SessionRecord(
                course_id=course_id,
                class_id=state.current_class_id,
                instructor_id=instructor_id,
                room_id=room_id,
                group_id=group_id,
                start_at=start_at,
                finish_at=finish_at,
                type=session_type,
            ))
        return records


def replace_sessions(gateway, course_id: int, sessions: list[SessionRecord]) -> None:
    """Swap a course's stored sessions for the new list in one transaction."""
    def replace():
        gateway.delete_sessions_for_course(course_id)
        gateway.add_sessions(sessions)

    gateway.run_in_transaction(replace)


class TimetableParser:
    """Turns fetch events into stored sessions.

    A new gateway is opened per event so parses of different courses can
    run side by side.
    """

    def __init__(self, settings: Settings, gateway_factory: Callable[[], object],
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self._gateway_factory = gateway_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse_rows(self, gateway, rows: Sequence, course_id: int, group_label: str) -> tuple[list[SessionRecord], ParseStats]:
        """Normalize rows, extract sessions and replace the course's stored set."""
        rows, _ = normalize(rows, self.settings.header_row)
        sessions, stats = SessionExtractor(gateway, self.settings).extract(rows, course_id, group_label)
        replace_sessions(gateway, course_id, sessions)
        return sessions, stats

    def handle_file_updated(self, event: FileUpdated, gateway=None) -> ParseStats:
        label = f"{event.course_code}-{event.grade}"
        try:
            gateway = gateway or self._gateway_factory()
            course_id = gateway.ensure_course(event.course_code, event.grade, self._clock(), event.project)
            logger.info(f"Parsing Excel for {label}. Course id: {course_id}. Path: {event.path}")

            rows = load_worksheet(event.path)
            _, stats = self.parse_rows(gateway, rows, course_id, event.group_label)

            gateway.update_course_last_checked(event.course_code, event.grade, self._clock(), event.project)
            clear_failed(event.path)
            logger.info(f"Parse summary for {label}: {stats.summary()}")
            return stats
        except Exception as e:
            logger.error(f"Parser failed for {label}: {e}")
            mark_failed(event.path)
            raise

    def handle_fetched(self, event: Fetched, gateway=None) -> None:
        gateway = gateway or self._gateway_factory()
        try:
            gateway.update_course_last_checked(event.course_code, event.grade, event.timestamp, event.project)
        except LookupError:
            logger.warning(f"{event.course_code}-{event.grade} has not been parsed yet, latest check not stored")
            return
        logger.info(f"Latest check updated for {event.course_code}-{event.grade}")
