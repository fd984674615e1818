import threading
import unittest
from types import SimpleNamespace
from unittest import mock

from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from scraper.models import DropdownOption, FormOptions, ProgramOptions
from sync_service import SweepScheduler


class StubFetcher:
    def __init__(self):
        self.cached_form_options = None

    def scrape_form_options(self, force=False):
        return self.cached_form_options

    def download_timetable(self, target):
        return True


class StatusApiTests(unittest.TestCase):

    def setUp(self):
        self.fetcher = StubFetcher()
        self.scheduler = SweepScheduler(Settings(), self.fetcher, threading.Event())
        self.worker = SimpleNamespace(
            scheduler=self.scheduler,
            fetcher=self.fetcher,
            start=mock.Mock(),
            stop=mock.Mock(),
        )
        self.client = TestClient(create_app(self.worker))

    def test_ping(self):
        response = self.client.get("/ping")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_status_before_first_sweep(self):
        response = self.client.get("/sync/status")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "idle")
        self.assertEqual(body["targets"], [])
        self.assertEqual(body["results"], {})

    def test_form_options_not_scraped_yet(self):
        self.assertEqual(self.client.get("/form/options").status_code, 503)

    def test_form_options(self):
        grade = DropdownOption(value="1", label="1. letnik", selector="1")
        self.fetcher.cached_form_options = FormOptions(
            course_options=[DropdownOption(value="BV20", label="RIT (BV20)", selector="7")],
            programs={"BV20": ProgramOptions(grade_options=[grade], projects_by_grade={"1": []})},
        )

        body = self.client.get("/form/options").json()

        self.assertEqual(body["course_options"][0]["value"], "BV20")
        self.assertEqual(body["programs"]["BV20"]["grade_options"][0]["label"], "1. letnik")

    def test_refresh_clears_matrix(self):
        self.fetcher.cached_form_options = FormOptions(
            course_options=[DropdownOption(value="BV20", label="RIT (BV20)", selector="7")],
            programs={"BV20": ProgramOptions(grade_options=[DropdownOption("1", "1. letnik", "1")])},
        )
        self.scheduler._ensure_targets()
        self.assertEqual(len(self.scheduler.targets), 1)

        response = self.client.post("/sync/refresh")

        self.assertTrue(response.json()["success"])
        self.assertEqual(self.scheduler.targets, ())

    def test_lifecycle_starts_and_stops_worker(self):
        with TestClient(create_app(self.worker)):
            self.worker.start.assert_called_once_with()
        self.worker.stop.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
