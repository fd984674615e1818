"""
Sweep scheduler for the timetable portal.

Runs forever on a background thread: build the (course, grade, project)
matrix from the portal's own dropdowns, export every target one after the
other, sleep, repeat. Only the shared cancel event stops it.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from config import Settings
from db_service import SupabaseGateway
from event_bus import EventQueue, ParseDispatcher
from scraper.excel_parser import TimetableParser
from scraper.models import CourseTarget, FormOptions
from scraper.retry_helper import OperationCancelled
from scraper.timetable_fetcher import TimetableFetcher

logger = logging.getLogger(__name__)


class SweepStatus(str, Enum):
    """Status states for the sweep worker."""
    IDLE = "idle"
    BUILDING_MATRIX = "building_matrix"
    FETCHING = "fetching"
    WAITING = "waiting"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


@dataclass
class TargetResult:
    target: CourseTarget
    succeeded: bool
    finished_at: datetime


@dataclass
class SweepState:
    """Snapshot of what the worker is doing, for the status endpoint."""
    status: SweepStatus = SweepStatus.IDLE
    message: str = "Not started"
    current_target: Optional[CourseTarget] = None
    sweeps_completed: int = 0
    last_sweep_started_at: Optional[datetime] = None
    last_sweep_completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    results: dict[str, TargetResult] = field(default_factory=dict)


def build_targets(options: FormOptions, settings: Settings) -> tuple[CourseTarget, ...]:
    """Expand scraped form options into the tuple of targets to sweep.

    Only tracked courses are kept. A grade without projects still yields one
    target with an empty project.
    """
    targets = []
    for course in options.course_options:
        if course.value not in settings.courses_to_track:
            continue
        program = options.programs.get(course.value)
        if program is None:
            continue
        for grade_option in program.grade_options:
            try:
                grade = int(grade_option.value)
            except ValueError:
                logger.warning(f"Skipping grade '{grade_option.label}' of {course.value}: not a number")
                continue
            projects = [p.value for p in program.projects_by_grade.get(grade_option.value, [])] or [""]
            for project in projects:
                targets.append(CourseTarget(
                    course_code=course.value,
                    grade=grade,
                    project=project,
                    group_label=settings.group_label_for(course.value, grade, project),
                ))
    return tuple(targets)


class SweepScheduler:
    """Sequential fetch loop over every tracked target."""

    def __init__(self, settings: Settings, fetcher, cancel_event: Optional[threading.Event] = None):
        self.settings = settings
        self.fetcher = fetcher
        self.cancel_event = cancel_event or threading.Event()
        self._state = SweepState()
        self._state_lock = threading.Lock()
        self._targets: tuple[CourseTarget, ...] = ()
        self._targets_built_at: Optional[float] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Thread management
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the sweep loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self.cancel_event.clear()
        self._thread = threading.Thread(target=self.run, name="sweep-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.cancel_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def targets(self) -> tuple[CourseTarget, ...]:
        return self._targets

    def request_matrix_refresh(self) -> None:
        """Drop the current matrix so the next cycle scrapes the portal again."""
        self._targets = ()
        self._targets_built_at = None

    def get_status(self) -> dict:
        with self._state_lock:
            state = self._state
            return {
                "status": state.status.value,
                "message": state.message,
                "current_target": str(state.current_target) if state.current_target else None,
                "targets": [str(t) for t in self._targets],
                "sweeps_completed": state.sweeps_completed,
                "last_sweep_started_at": state.last_sweep_started_at.isoformat() if state.last_sweep_started_at else None,
                "last_sweep_completed_at": state.last_sweep_completed_at.isoformat() if state.last_sweep_completed_at else None,
                "last_error": state.last_error,
                "results": {
                    name: {
                        "succeeded": result.succeeded,
                        "finished_at": result.finished_at.isoformat(),
                    }
                    for name, result in state.results.items()
                },
            }

    def _update(self, status: SweepStatus, message: str, **changes) -> None:
        with self._state_lock:
            self._state.status = status
            self._state.message = message
            for name, value in changes.items():
                setattr(self._state, name, value)
        logger.info(f"Sweep: {status.value} - {message}")

    def _wait(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise OperationCancelled("Sweep cancelled")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Sweep until the cancel event is set. Never returns otherwise."""
        logger.info("Sweep worker started")
        try:
            while not self.cancel_event.is_set():
                try:
                    if not self.run_once():
                        continue
                    self._update(SweepStatus.WAITING, "Sweep complete. Sleeping until next cycle")
                    self._wait(self.settings.inter_cycle_delay)
                except OperationCancelled:
                    break
                except Exception as e:
                    logger.exception("Unhandled error in sweep loop")
                    self._update(SweepStatus.BACKING_OFF, f"Unhandled error, backing off: {e}", last_error=str(e))
                    try:
                        self._wait(self.settings.critical_backoff_delay)
                    except OperationCancelled:
                        break
        finally:
            self._update(SweepStatus.STOPPED, "Sweep worker stopped", current_target=None)

    def run_once(self) -> bool:
        """One sweep over the matrix.

        Returns:
            False if the matrix could not be built (after waiting the retry
            delay), True once every target has been attempted

        Raises:
            OperationCancelled: as soon as the cancel event is seen
        """
        if not self._ensure_targets():
            self._wait(self.settings.matrix_retry_delay)
            return False

        targets = self._targets
        self._update(
            SweepStatus.FETCHING,
            f"Starting fetch sweep over {len(targets)} targets",
            last_sweep_started_at=datetime.now(timezone.utc),
        )

        for target in targets:
            if self.cancel_event.is_set():
                raise OperationCancelled("Sweep cancelled")

            self._update(SweepStatus.FETCHING, f"Fetching {target}", current_target=target)
            succeeded = self._fetch(target)
            with self._state_lock:
                self._state.results[str(target)] = TargetResult(target, succeeded, datetime.now(timezone.utc))

            if succeeded:
                logger.info(f"Done: {target}")
                self._wait(self.settings.inter_item_delay)
            else:
                logger.warning(f"Fetch failed for {target}, backing off")
                self._wait(self.settings.error_backoff_delay)

        with self._state_lock:
            self._state.sweeps_completed += 1
            self._state.last_sweep_completed_at = datetime.now(timezone.utc)
            self._state.current_target = None
        return True

    def _fetch(self, target: CourseTarget) -> bool:
        try:
            return self.fetcher.download_timetable(target)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Fetch failed for {target}: {e}")
            with self._state_lock:
                self._state.last_error = str(e)
            return False

    def _matrix_is_stale(self) -> bool:
        if not self._targets or self._targets_built_at is None:
            return True
        return time.monotonic() - self._targets_built_at >= self.settings.matrix_refresh_interval

    def _ensure_targets(self) -> bool:
        if not self._matrix_is_stale():
            return True

        self._update(SweepStatus.BUILDING_MATRIX, "Reading course/grade/project options from the portal")
        try:
            options = self.fetcher.scrape_form_options(force=True)
            targets = build_targets(options, self.settings)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Could not build the target matrix: {e}")
            with self._state_lock:
                self._state.last_error = str(e)
            return bool(self._targets)

        if not targets:
            logger.error(f"No targets found for tracked courses {list(self.settings.courses_to_track)}")
            return bool(self._targets)

        # Swap the whole tuple, never mutate the one being iterated
        self._targets = targets
        self._targets_built_at = time.monotonic()
        logger.info(f"Target matrix rebuilt: {[str(t) for t in targets]}")
        return True


class TimetableWorker:
    """The whole background pipeline: sweep -> fetch -> events -> parse."""

    def __init__(self, settings: Settings, gateway_factory=None, session_factory=None):
        self.settings = settings
        self.cancel_event = threading.Event()
        self.events = EventQueue()
        self.fetcher = TimetableFetcher(
            settings,
            self.events.publish,
            session_factory=session_factory,
            cancel_event=self.cancel_event,
        )
        self.parser = TimetableParser(
            settings,
            gateway_factory or (lambda: SupabaseGateway.from_settings(settings)),
        )
        self.dispatcher = ParseDispatcher(self.events, self.parser, settings.parse_workers)
        self.scheduler = SweepScheduler(settings, self.fetcher, self.cancel_event)

    def start(self) -> None:
        self.dispatcher.start()
        self.scheduler.start()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        logger.info("Stopping timetable worker...")
        self.scheduler.stop(timeout)
        self.dispatcher.stop(timeout)
