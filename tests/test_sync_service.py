import threading
import unittest
from unittest import mock

from config import Settings
from scraper.models import CourseTarget, DropdownOption, FormOptions, ProgramOptions
from scraper.retry_helper import OperationCancelled
from sync_service import SweepScheduler, SweepStatus, build_targets

FAST = Settings(
    inter_item_delay=0,
    error_backoff_delay=0,
    inter_cycle_delay=0,
    critical_backoff_delay=0,
    matrix_retry_delay=0,
    group_labels={"BV20": "RIT {grade}"},
)


def option(value, label=None):
    return DropdownOption(value=value, label=label or value, selector=value)


def form_options(projects_by_grade=None):
    return FormOptions(
        course_options=[option("BV20"), option("BU10")],
        programs={
            "BV20": ProgramOptions(
                grade_options=[option("1", "1. letnik"), option("2", "2. letnik")],
                projects_by_grade=projects_by_grade if projects_by_grade is not None else {},
            ),
            "BU10": ProgramOptions(grade_options=[option("1")]),
        },
    )


class FakeFetcher:
    """Returns queued results per call; stops the sweep after max_calls downloads."""

    def __init__(self, cancel_event, results=None, options=None, max_calls=None):
        self.cancel_event = cancel_event
        self.results = list(results or [])
        self.options = options or form_options()
        self.max_calls = max_calls
        self.scrapes = 0
        self.fetched = []

    def scrape_form_options(self, force=False):
        self.scrapes += 1
        if isinstance(self.options, Exception):
            raise self.options
        return self.options

    def download_timetable(self, target):
        self.fetched.append(target)
        if self.max_calls is not None and len(self.fetched) >= self.max_calls:
            self.cancel_event.set()
        result = self.results.pop(0) if self.results else True
        if isinstance(result, Exception):
            raise result
        return result


class BuildTargetsTests(unittest.TestCase):

    def test_grades_without_projects(self):
        targets = build_targets(form_options(), FAST)

        self.assertEqual(targets, (
            CourseTarget("BV20", 1, "", "RIT 1"),
            CourseTarget("BV20", 2, "", "RIT 2"),
        ))

    def test_projects_expand_grade(self):
        options = form_options({"2": [option("VP1"), option("VP2")]})

        targets = build_targets(options, FAST)

        self.assertEqual([str(t) for t in targets], ["BV20-1", "BV20-2-VP1", "BV20-2-VP2"])

    def test_tracked_courses(self):
        settings = Settings(tracked_courses=("BV20", "BU10"))
        targets = build_targets(form_options(), settings)
        self.assertEqual([t.course_code for t in targets], ["BV20", "BV20", "BU10"])

    def test_default_group_label_is_project_or_course(self):
        options = form_options({"2": [option("VP1")]})
        targets = build_targets(options, Settings())
        self.assertEqual([t.group_label for t in targets], ["BV20", "VP1"])

    def test_non_numeric_grade_is_skipped(self):
        options = form_options()
        options.programs["BV20"].grade_options.append(option("x", "Izredni"))

        with self.assertLogs("sync_service", level="WARNING"):
            targets = build_targets(options, FAST)

        self.assertEqual(len(targets), 2)


class SweepSchedulerTests(unittest.TestCase):

    def setUp(self):
        self.cancel = threading.Event()

    def make(self, **kwargs):
        fetcher = FakeFetcher(self.cancel, **kwargs)
        return SweepScheduler(FAST, fetcher, self.cancel), fetcher

    def test_run_once_visits_every_target(self):
        scheduler, fetcher = self.make()

        self.assertTrue(scheduler.run_once())

        self.assertEqual([str(t) for t in fetcher.fetched], ["BV20-1", "BV20-2"])
        status = scheduler.get_status()
        self.assertEqual(status["sweeps_completed"], 1)
        self.assertEqual(status["targets"], ["BV20-1", "BV20-2"])
        self.assertTrue(status["results"]["BV20-2"]["succeeded"])

    def test_failure_does_not_stop_the_sweep(self):
        scheduler, fetcher = self.make(results=[RuntimeError("browser died"), False])

        with self.assertLogs("sync_service", level="WARNING"):
            self.assertTrue(scheduler.run_once())

        self.assertEqual(len(fetcher.fetched), 2)
        status = scheduler.get_status()
        self.assertFalse(status["results"]["BV20-1"]["succeeded"])
        self.assertFalse(status["results"]["BV20-2"]["succeeded"])
        self.assertEqual(status["last_error"], "browser died")

    def test_matrix_failure_skips_the_sweep(self):
        scheduler, fetcher = self.make(options=RuntimeError("portal down"))

        with self.assertLogs("sync_service", level="ERROR"):
            self.assertFalse(scheduler.run_once())

        self.assertEqual(fetcher.fetched, [])
        self.assertEqual(scheduler.get_status()["last_error"], "portal down")

    def test_refresh_then_failed_matrix_leaves_no_targets(self):
        scheduler, fetcher = self.make()
        scheduler.run_once()
        scheduler.request_matrix_refresh()
        fetcher.options = RuntimeError("portal down")

        with self.assertLogs("sync_service", level="ERROR"):
            self.assertFalse(scheduler.run_once())

        self.assertEqual(scheduler.targets, ())

    def test_matrix_is_reused_until_stale(self):
        scheduler, fetcher = self.make()

        scheduler.run_once()
        scheduler.run_once()
        self.assertEqual(fetcher.scrapes, 1)

        scheduler.request_matrix_refresh()
        scheduler.run_once()
        self.assertEqual(fetcher.scrapes, 2)

    def test_empty_matrix(self):
        scheduler, fetcher = self.make(options=FormOptions())

        with self.assertLogs("sync_service", level="ERROR"):
            self.assertFalse(scheduler.run_once())

    def test_cancel_mid_sweep(self):
        scheduler, fetcher = self.make(max_calls=1)

        with self.assertRaises(OperationCancelled):
            scheduler.run_once()

        self.assertEqual(len(fetcher.fetched), 1)

    def test_run_loops_until_cancelled(self):
        scheduler, fetcher = self.make(max_calls=5)

        scheduler.run()

        self.assertEqual(len(fetcher.fetched), 5)
        status = scheduler.get_status()
        self.assertEqual(status["status"], SweepStatus.STOPPED.value)
        self.assertEqual(status["sweeps_completed"], 2)

    def test_unexpected_error_backs_off_and_continues(self):
        scheduler, fetcher = self.make()

        with mock.patch.object(scheduler, "run_once", side_effect=[RuntimeError("boom"), OperationCancelled()]) as run_once:
            with self.assertLogs("sync_service", level="ERROR"):
                scheduler.run()

        self.assertEqual(run_once.call_count, 2)
        self.assertEqual(scheduler.get_status()["last_error"], "boom")
        self.assertEqual(scheduler.get_status()["status"], "stopped")

    def test_start_and_stop_thread(self):
        scheduler, fetcher = self.make()
        fetcher.options = RuntimeError("portal down")
        scheduler.settings = Settings(matrix_retry_delay=60)

        scheduler.start()
        scheduler.stop(timeout=5)

        self.assertTrue(self.cancel.is_set())
        self.assertEqual(scheduler.get_status()["status"], "stopped")


if __name__ == "__main__":
    unittest.main()
