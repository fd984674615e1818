"""
Settings for the timetable worker.

Values come from the environment (a .env file is loaded first), so the same
code runs locally and in the container without edits.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = "timetable.log"

DEFAULT_WEEKDAYS = ("Ponedeljek", "Torek", "Sreda", "Četrtek", "Petek", "Sobota", "Nedelja")


class ConfigurationError(ValueError):
    """Raised when an environment value cannot be interpreted."""


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str, default: tuple) -> tuple:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return tuple(default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def parse_mapping(name: str, raw: str) -> dict[str, str]:
    """Parse "KEY:VALUE,KEY:VALUE" into a dict.

    Values may contain spaces (group label templates do), keys are stripped.
    """
    mapping = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, value = entry.partition(":")
        if not sep or not key.strip():
            raise ConfigurationError(f"{name} entry '{entry}' must look like KEY:VALUE")
        mapping[key.strip()] = value.strip()
    return mapping


def _get_int_mapping(name: str, default: str) -> dict[str, int]:
    raw = os.getenv(name) or default
    try:
        return {k: int(v) for k, v in parse_mapping(name, raw).items()}
    except ValueError:
        raise ConfigurationError(f"{name} values must be integers, got '{raw}'")


@dataclass(frozen=True)
class Settings:
    """Everything the fetcher, parser and scheduler need from the environment."""

    portal_url: str = "https://www.wise-tt.com/wtt_um_feri/index.jsp"
    action_timeout: float = 15.0
    download_timeout: float = 60.0
    click_delay: float = 0.5
    headless: bool = True

    inter_item_delay: float = 30.0
    error_backoff_delay: float = 180.0
    inter_cycle_delay: float = 3600.0
    critical_backoff_delay: float = 600.0
    matrix_retry_delay: float = 60.0
    matrix_refresh_interval: float = 3600.0

    max_retry_attempts: int = 3
    retry_initial_delay: float = 2.0
    retry_max_delay: float = 30.0

    download_path: str = os.path.join(os.getcwd(), "Data", "ExcelFiles")
    screenshot_path: str = ""
    log_directory: str = os.path.join(os.getcwd(), "Logs")

    weekday_names: tuple = DEFAULT_WEEKDAYS
    class_header_marker: str = "Dan"
    header_row: int = 0
    date_format: str = "%d.%m.%Y %H:%M"
    portal_timezone: str = "Europe/Ljubljana"

    course_option_map: dict = field(default_factory=lambda: {"BV20": 7})
    grade_option_map: dict = field(default_factory=lambda: {"1": 1, "2": 2, "3": 3})
    tracked_courses: tuple = ()
    group_labels: dict = field(default_factory=dict)

    parse_workers: int = 2
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @property
    def screenshot_dir(self) -> str:
        return self.screenshot_path or os.path.join(self.download_path, "screenshots")

    @property
    def courses_to_track(self) -> tuple:
        return self.tracked_courses or tuple(self.course_option_map.keys())

    def group_label_for(self, course_code: str, grade: int, project: str) -> str:
        """Resolve the group label the parser filters on for one target."""
        template = self.group_labels.get(course_code, "{project}")
        label = template.format(course=course_code, grade=grade, project=project).strip()
        return label or course_code

    @classmethod
    def from_env(cls) -> "Settings":
        download_path = os.getenv("DOWNLOAD_PATH") or os.path.join(os.getcwd(), "Data", "ExcelFiles")
        return cls(
            portal_url=os.getenv("PORTAL_URL", cls.portal_url),
            action_timeout=_get_float("ACTION_TIMEOUT", cls.action_timeout),
            download_timeout=_get_float("DOWNLOAD_TIMEOUT", cls.download_timeout),
            click_delay=_get_float("CLICK_DELAY", cls.click_delay),
            headless=_get_bool("HEADLESS", cls.headless),
            inter_item_delay=_get_float("INTER_ITEM_DELAY", cls.inter_item_delay),
            error_backoff_delay=_get_float("ERROR_BACKOFF_DELAY", cls.error_backoff_delay),
            inter_cycle_delay=_get_float("INTER_CYCLE_DELAY", cls.inter_cycle_delay),
            critical_backoff_delay=_get_float("CRITICAL_BACKOFF_DELAY", cls.critical_backoff_delay),
            matrix_retry_delay=_get_float("MATRIX_RETRY_DELAY", cls.matrix_retry_delay),
            matrix_refresh_interval=_get_float("MATRIX_REFRESH_INTERVAL", cls.matrix_refresh_interval),
            max_retry_attempts=_get_int("MAX_RETRY_ATTEMPTS", cls.max_retry_attempts),
            retry_initial_delay=_get_float("RETRY_INITIAL_DELAY", cls.retry_initial_delay),
            retry_max_delay=_get_float("RETRY_MAX_DELAY", cls.retry_max_delay),
            download_path=download_path,
            screenshot_path=os.getenv("SCREENSHOT_PATH", ""),
            log_directory=os.getenv("LOG_FILE_DIRECTORY") or os.path.join(os.getcwd(), "Logs"),
            weekday_names=_get_list("WEEKDAY_NAMES", DEFAULT_WEEKDAYS),
            class_header_marker=os.getenv("CLASS_HEADER_MARKER", cls.class_header_marker),
            header_row=_get_int("HEADER_ROW", cls.header_row),
            date_format=os.getenv("DATE_FORMAT", cls.date_format),
            portal_timezone=os.getenv("PORTAL_TIMEZONE", cls.portal_timezone),
            course_option_map=_get_int_mapping("COURSE_OPTION_MAP", "BV20:7"),
            grade_option_map=_get_int_mapping("GRADE_OPTION_MAP", "1:1,2:2,3:3"),
            tracked_courses=_get_list("TRACKED_COURSES", ()),
            group_labels=parse_mapping("GROUP_LABELS", os.getenv("GROUP_LABELS", "")),
            parse_workers=_get_int("PARSE_WORKERS", cls.parse_workers),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_KEY"),
            api_host=os.getenv("API_HOST", cls.api_host),
            api_port=_get_int("API_PORT", cls.api_port),
        )


def configure_logging(settings: Settings, level: int = logging.INFO) -> None:
    """Log to the console and to an append-only file under settings.log_directory."""
    os.makedirs(settings.log_directory, exist_ok=True)
    log_file = os.path.join(settings.log_directory, LOG_FILE_NAME)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file, mode="a", encoding="utf-8"),
        ],
    )
