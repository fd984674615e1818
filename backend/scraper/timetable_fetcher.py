"""
Timetable portal fetcher.

This module handles:
- Reading the program / grade / project dropdowns of the portal form
- Exporting the Excel timetable for one (course, grade, project) target
- Deciding whether a download actually changed (content hash)
- Publishing FileUpdated / Fetched events for the parser

Every step of the export is retried on its own, so a slow "select grade"
does not force the whole page to be loaded again.
"""

import hashlib
import logging
import os
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config import Settings
from scraper import locators
from scraper.browser_session import BrowserSession, SeleniumBrowserSession
from scraper.excel_cleanup import is_marked_failed
from scraper.models import (
    CourseTarget,
    DropdownOption,
    Fetched,
    FileUpdated,
    FormOptions,
    ProgramOptions,
)
from scraper.retry_helper import (
    ConfigurationCancelled,
    OperationCancelled,
    execute_with_retry,
)

logger = logging.getLogger(__name__)

COURSE_CODE_RE = re.compile(r'\(([^)]+)\)')
GRADE_NUMBER_RE = re.compile(r'^(\d+)')
HASH_CHUNK_SIZE = 64 * 1024


def extract_project_code(project_name: str) -> str:
    """Return the code in trailing parentheses ("... (VP1)" -> "VP1"), else the full text."""
    trimmed = (project_name or "").strip()
    open_paren = trimmed.rfind("(")
    if open_paren >= 0 and trimmed.endswith(")"):
        code = trimmed[open_paren + 1:-1].strip()
        if code:
            return code
    return trimmed


def file_digest(path: str) -> bytes:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.digest()


def files_are_equal(path1: str, path2: str) -> bool:
    if os.path.getsize(path1) != os.path.getsize(path2):
        return False
    return file_digest(path1) == file_digest(path2)


def reconcile_download(temp_path: str, final_path: str) -> bool:
    """Install temp_path as final_path unless both hold the same bytes
    and the installed workbook was parsed successfully.

    Returns:
        True if final_path now holds new content (or content whose last
        parse failed), False if the download was identical and has been
        discarded
    """
    if not os.path.exists(final_path):
        os.replace(temp_path, final_path)
        return True

    if files_are_equal(final_path, temp_path) and not is_marked_failed(final_path):
        os.remove(temp_path)
        return False

    backup_path = final_path + ".bak"
    if os.path.exists(backup_path):
        os.remove(backup_path)

    os.replace(final_path, backup_path)
    try:
        os.replace(temp_path, final_path)
    except OSError:
        os.replace(backup_path, final_path)
        raise
    os.remove(backup_path)
    return True


class TimetableFetcher:
    """Drives one browser session at a time through the portal export form."""

    FORM_OPTIONS_TTL = 3600.0

    def __init__(
        self,
        settings: Settings,
        publish: Callable[[object], None],
        session_factory: Optional[Callable[[], BrowserSession]] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self._publish = publish
        self._session_factory = session_factory or self._default_session
        self._cancel_event = cancel_event or threading.Event()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # The portal form is stateful; never drive two pages at once
        self._browser_lock = threading.Lock()
        self._form_options: Optional[FormOptions] = None
        self._form_options_expiry: Optional[datetime] = None

        os.makedirs(settings.download_path, exist_ok=True)
        os.makedirs(settings.screenshot_dir, exist_ok=True)

    def _default_session(self) -> BrowserSession:
        return SeleniumBrowserSession(
            headless=self.settings.headless,
            timeout=self.settings.action_timeout,
            download_timeout=self.settings.download_timeout,
            download_root=os.path.join(self.settings.download_path, ".incoming"),
            cancel_event=self._cancel_event,
        )

    @property
    def cached_form_options(self) -> Optional[FormOptions]:
        return self._form_options

    def workbook_path(self, target: CourseTarget) -> str:
        return os.path.join(self.settings.download_path, f"{target.file_stem}.xls")

    # ------------------------------------------------------------------
    # Small helpers
    # ------------------------------------------------------------------

    def _retry(self, operation, name: str):
        return execute_with_retry(
            operation,
            name,
            max_attempts=self.settings.max_retry_attempts,
            initial_delay=self.settings.retry_initial_delay,
            max_delay=self.settings.retry_max_delay,
            cancel_event=self._cancel_event,
        )

    def _pause(self) -> None:
        """Let the page settle after a click; wakes up early on cancellation."""
        if self._cancel_event.wait(self.settings.click_delay):
            raise OperationCancelled("Cancelled while waiting for the page")

    def _missing_mapping(self, message: str) -> None:
        logger.critical(message)
        raise ConfigurationCancelled(message)

    def _open_menu(self, browser: BrowserSession, menu_selector: str) -> str:
        """Click a dropdown open and return its current (live) element id."""
        menu = browser.locate(menu_selector)
        browser.click(menu)
        self._pause()
        menu_id = browser.read_attribute(menu, "id")
        if not menu_id:
            raise LookupError(f"Dropdown '{menu_selector}' has no id")
        return menu_id

    def _choose(self, browser: BrowserSession, menu_id: str, suffix, force: bool = False) -> None:
        browser.click(browser.locate(locators.menu_option(menu_id, suffix)), force=force)
        self._pause()

    # ------------------------------------------------------------------
    # Form option discovery
    # ------------------------------------------------------------------

    def scrape_form_options(self, force: bool = False) -> FormOptions:
        """Read the program, grade and project dropdowns of the portal.

        Results are cached for an hour. Errors propagate to the caller and
        leave the previous cache in place.
        """
        now = self._clock()
        if not force and self._form_options is not None and now < self._form_options_expiry:
            logger.info("Returning cached form options")
            return self._form_options

        with self._browser_lock:
            with self._session_factory() as browser:
                options = self._read_form_options(browser)

        self._form_options = options
        self._form_options_expiry = now + timedelta(seconds=self.FORM_OPTIONS_TTL)
        logger.info(f"Cached form options (expires in {self.FORM_OPTIONS_TTL / 60:.0f} minutes)")
        return options

    def _read_form_options(self, browser: BrowserSession) -> FormOptions:
        url = self.settings.portal_url
        self._retry(lambda: browser.navigate(url), f"Navigate to {url}")

        options = FormOptions()
        program_id = self._open_menu(browser, locators.PROGRAM_MENU)
        for item in browser.locate_all(locators.menu_panel_items(program_id)):
            text = browser.read_text(item).strip()
            match = COURSE_CODE_RE.search(text)
            if not text or not match:
                continue
            item_id = browser.read_attribute(item, "id") or ""
            options.course_options.append(DropdownOption(
                value=match.group(1),
                label=text,
                selector=locators.option_suffix(program_id, item_id),
            ))
        logger.info(f"Found {len(options.course_options)} programs on the portal")

        for course in options.course_options:
            if course.value not in self.settings.courses_to_track:
                continue
            options.programs[course.value] = self._read_program(browser, course)
        return options

    def _read_program(self, browser: BrowserSession, course: DropdownOption) -> ProgramOptions:
        program_id = self._open_menu(browser, locators.PROGRAM_MENU)
        self._choose(browser, program_id, course.selector)

        program = ProgramOptions()
        grade_id = self._open_menu(browser, locators.GRADE_MENU)
        for item in browser.locate_all(locators.menu_panel_items(grade_id)):
            text = browser.read_text(item).strip()
            if not text:
                continue
            # "1. letnik" -> "1"
            match = GRADE_NUMBER_RE.match(text)
            item_id = browser.read_attribute(item, "id") or ""
            program.grade_options.append(DropdownOption(
                value=match.group(1) if match else text,
                label=text,
                selector=locators.option_suffix(grade_id, item_id),
            ))
        # Close the grade dropdown again
        browser.click(browser.locate(locators.GRADE_MENU))
        self._pause()

        for grade in program.grade_options:
            logger.info(f"Scraping projects for {course.value} grade {grade.value} ({grade.label})")
            try:
                projects = self._read_projects(browser, grade)
            except OperationCancelled:
                raise
            except Exception as e:
                logger.warning(f"Failed to scrape projects for {course.value} grade {grade.value}: {e}")
                projects = []
            program.projects_by_grade[grade.value] = projects
            logger.info(f"Grade {grade.value} has {len(projects)} projects")
        return program

    def _read_projects(self, browser: BrowserSession, grade: DropdownOption) -> list[DropdownOption]:
        grade_id = self._open_menu(browser, locators.GRADE_MENU)
        # Options outside the viewport only react to a script click
        self._choose(browser, grade_id, grade.selector, force=True)

        project_menu = browser.locate(locators.PROJECT_MENU)
        if browser.read_attribute(project_menu, "aria-disabled") == "true":
            logger.warning(f"Project dropdown is disabled for grade {grade.value}")
            return []

        project_id = self._open_menu(browser, locators.PROJECT_MENU)
        projects = []
        for item in browser.locate_all(locators.menu_panel_items(project_id)):
            text = browser.read_text(item).strip()
            if not text:
                continue
            data_label = browser.read_attribute(item, "data-label")
            item_id = browser.read_attribute(item, "id") or ""
            projects.append(DropdownOption(
                value=extract_project_code(data_label or text),
                label=text,
                selector=locators.option_suffix(project_id, item_id),
            ))
        # Close the project dropdown again
        browser.click(browser.locate(locators.PROJECT_MENU))
        self._pause()
        return projects

    # ------------------------------------------------------------------
    # Export workflow
    # ------------------------------------------------------------------

    def download_timetable(self, target: CourseTarget) -> bool:
        """Export, download and reconcile the workbook of one target.

        Failures are logged (with a screenshot) and reported as False so the
        caller can move on to the next target.

        Returns:
            True if the export went through, False if this target was abandoned

        Raises:
            OperationCancelled: when the shared cancel event is set
        """
        if self._cancel_event.is_set():
            raise OperationCancelled(f"Fetch of {target} cancelled")

        final_path = self.workbook_path(target)
        temp_path = os.path.join(self.settings.download_path, f"{target.file_stem}.download")

        with self._browser_lock:
            with self._session_factory() as browser:
                try:
                    self._run_export(browser, target, temp_path)
                except ConfigurationCancelled as e:
                    self._capture_screenshot(browser, target, "canceled")
                    logger.warning(f"Skipping {target}: iteration canceled (likely selector issue). {e}")
                    return False
                except OperationCancelled:
                    logger.info(f"Fetch of {target} cancelled")
                    raise
                except Exception as e:
                    self._capture_screenshot(browser, target, "error")
                    logger.error(f"Skipping {target}: unexpected error while fetching. {e}")
                    return False

        try:
            updated = reconcile_download(temp_path, final_path)
        except OSError as e:
            logger.error(f"Skipping {target}: could not install downloaded file. {e}")
            return False

        if updated:
            logger.info(f"Workbook changed for {target}: {final_path}")
            self._publish(FileUpdated(
                path=final_path,
                course_code=target.course_code,
                grade=target.grade,
                group_label=target.group_label,
                project=target.project,
            ))
        else:
            logger.info(f"Workbook unchanged for {target}")
            self._publish(Fetched(
                timestamp=self._clock(),
                course_code=target.course_code,
                grade=target.grade,
                project=target.project,
            ))
        return True

    def _run_export(self, browser: BrowserSession, target: CourseTarget, temp_path: str) -> None:
        url = self.settings.portal_url
        self._retry(lambda: browser.navigate(url), f"Navigate to {url}")
        self._retry(lambda: self._select_program(browser, target), f"Select course {target.course_code}")
        self._retry(lambda: self._select_grade(browser, target), f"Select grade {target.grade}")
        if target.project:
            self._retry(lambda: self._select_project(browser, target), f"Select project {target.project}")
        self._retry(lambda: self._open_export_menu(browser), "Select export option")
        button_id = self._retry(lambda: self._locate_download_trigger(browser), "Get download button ID")

        def trigger():
            browser.click(browser.locate(locators.by_id(button_id)))

        downloaded = self._retry(lambda: browser.wait_for_download(trigger), f"Download Excel for {target}")
        os.replace(downloaded, temp_path)

    def _select_program(self, browser: BrowserSession, target: CourseTarget) -> None:
        option_index = self.settings.course_option_map.get(target.course_code)
        if option_index is None:
            self._missing_mapping(f"No selectors for {target.course_code} course")

        menu_id = self._open_menu(browser, locators.PROGRAM_MENU)
        self._choose(browser, menu_id, option_index)

    def _select_grade(self, browser: BrowserSession, target: CourseTarget) -> None:
        suffix = self.settings.grade_option_map.get(str(target.grade))
        if suffix is None and self._form_options is not None:
            scraped = self._form_options.find_grade(target.course_code, target.grade)
            suffix = scraped.selector if scraped else None
        if suffix is None:
            self._missing_mapping(f"No selectors for grade {target.grade}")

        menu_id = self._open_menu(browser, locators.GRADE_MENU)
        self._choose(browser, menu_id, suffix)

    def _select_project(self, browser: BrowserSession, target: CourseTarget) -> None:
        option = None
        if self._form_options is not None:
            option = self._form_options.find_project(target.course_code, target.grade, target.project)
        if option is None:
            self._missing_mapping(f"No selectors for project {target.project}")

        menu_id = self._open_menu(browser, locators.PROJECT_MENU)
        self._choose(browser, menu_id, option.selector)

    def _open_export_menu(self, browser: BrowserSession) -> None:
        browser.click(browser.locate(locators.button_text_span(locators.EXPORT_BUTTON_TEXT)))
        self._pause()

    def _locate_download_trigger(self, browser: BrowserSession) -> str:
        # The clickable element is the span's parent button; its id is regenerated per page state
        button = browser.locate(locators.button_text_span(locators.EXCEL_BUTTON_TEXT) + "/..")
        button_id = browser.read_attribute(button, "id")
        if not button_id:
            raise LookupError("Excel export button has no id")
        return button_id

    def _capture_screenshot(self, browser: BrowserSession, target: CourseTarget, error_kind: str) -> None:
        try:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            path = os.path.join(self.settings.screenshot_dir, f"{target.file_stem}_{error_kind}_{timestamp}.png")
            browser.screenshot(path)
            logger.info(f"Screenshot saved: {path}")
        except Exception as e:
            logger.warning(f"Failed to capture screenshot for {target}: {e}")
