"""
Data shapes shared by the fetch and parse halves of the pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SessionType(str, Enum):
    """Kind of teaching session, derived from the sheet's short type code."""
    LECTURE = "Lecture"
    COMPUTER_EXERCISE = "ComputerExercise"
    SEMINAR_EXERCISE = "SeminarExercise"
    LAB_EXERCISE = "LabExercise"
    OTHER = "Other"


# Short codes used in the type column
SESSION_TYPE_CODES = {
    "PR": SessionType.LECTURE,
    "RV": SessionType.COMPUTER_EXERCISE,
    "SV": SessionType.SEMINAR_EXERCISE,
    "LV": SessionType.LAB_EXERCISE,
}


@dataclass(frozen=True)
class CourseTarget:
    """One (course, grade, project) unit to fetch and parse."""
    course_code: str
    grade: int
    project: str = ""
    group_label: str = ""

    @property
    def file_stem(self) -> str:
        if self.project:
            return f"{self.course_code}-{self.grade}-{self.project}"
        return f"{self.course_code}-{self.grade}"

    def __str__(self) -> str:
        return self.file_stem


@dataclass(frozen=True)
class SheetCell:
    """A single worksheet cell, detached from the workbook it came from."""
    value: Any
    ctype: int = 1
    xf_index: Optional[int] = None
    note: Optional[str] = None
    hyperlink: Optional[str] = None

    def text(self) -> str:
        if self.value is None:
            return ""
        if isinstance(self.value, datetime):
            return self.value.strftime("%d.%m.%Y %H:%M")
        if isinstance(self.value, float) and self.value.is_integer():
            return str(int(self.value))
        return str(self.value)


@dataclass(frozen=True)
class SessionRecord:
    """One class session ready to be stored."""
    course_id: int
    class_id: int
    instructor_id: int
    room_id: int
    group_id: int
    start_at: datetime
    finish_at: datetime
    type: SessionType


@dataclass
class ParseStats:
    """Per-file diagnostics tallied while walking a worksheet."""
    total_rows: int = 0
    header_markers: int = 0
    session_rows_considered: int = 0
    sessions_parsed: int = 0
    skipped_no_class: int = 0
    skipped_unrecognized: int = 0
    row_errors: int = 0

    def summary(self) -> str:
        return (
            f"totalRows={self.total_rows}, headers={self.header_markers}, "
            f"considered={self.session_rows_considered}, parsedSessions={self.sessions_parsed}, "
            f"skippedNoClass={self.skipped_no_class}, skippedUnrecognized={self.skipped_unrecognized}, "
            f"rowErrors={self.row_errors}"
        )


@dataclass(frozen=True)
class DropdownOption:
    value: str
    label: str
    selector: str

    def to_dict(self) -> dict:
        return {"value": self.value, "label": self.label, "selector": self.selector}


@dataclass
class ProgramOptions:
    """Grades of one program and the projects offered in each grade."""
    grade_options: list[DropdownOption] = field(default_factory=list)
    projects_by_grade: dict[str, list[DropdownOption]] = field(default_factory=dict)


@dataclass
class FormOptions:
    """Dropdown contents scraped from the portal form."""
    course_options: list[DropdownOption] = field(default_factory=list)
    programs: dict[str, ProgramOptions] = field(default_factory=dict)

    def find_course(self, code: str) -> Optional[DropdownOption]:
        return next((o for o in self.course_options if o.value == code), None)

    def find_grade(self, code: str, grade: int) -> Optional[DropdownOption]:
        program = self.programs.get(code)
        if program is None:
            return None
        return next((o for o in program.grade_options if o.value == str(grade)), None)

    def find_project(self, code: str, grade: int, project: str) -> Optional[DropdownOption]:
        program = self.programs.get(code)
        if program is None:
            return None
        candidates = program.projects_by_grade.get(str(grade), [])
        return next((o for o in candidates if o.value == project or o.label == project), None)

    def to_dict(self) -> dict:
        return {
            "course_options": [o.to_dict() for o in self.course_options],
            "programs": {
                code: {
                    "grade_options": [o.to_dict() for o in program.grade_options],
                    "projects_by_grade": {
                        grade: [o.to_dict() for o in projects]
                        for grade, projects in program.projects_by_grade.items()
                    },
                }
                for code, program in self.programs.items()
            },
        }


@dataclass(frozen=True)
class FileUpdated:
    """A freshly downloaded workbook differs from the stored one."""
    path: str
    course_code: str
    grade: int
    group_label: str
    project: str = ""


@dataclass(frozen=True)
class Fetched:
    """A download finished but produced the same bytes as last time."""
    timestamp: datetime
    course_code: str
    grade: int
    project: str = ""
