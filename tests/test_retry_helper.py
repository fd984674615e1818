import logging
import threading
import unittest

from scraper.retry_helper import (
    ConfigurationCancelled,
    OperationCancelled,
    execute_with_retry,
)

LOGGER = "scraper.retry_helper"


class Flaky:
    """Fails with the queued errors, then returns result."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class ExecuteWithRetryTests(unittest.TestCase):

    def setUp(self):
        self.sleeps = []

    def test_succeeds_after_two_failures(self):
        op = Flaky([RuntimeError("first"), RuntimeError("second")])

        with self.assertLogs(LOGGER, level="WARNING") as logs:
            result = execute_with_retry(op, "Select grade", max_attempts=3, initial_delay=1.0,
                                        max_delay=30.0, sleep=self.sleeps.append)

        self.assertEqual(result, "ok")
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        warnings = [r for r in logs.records if r.levelno == logging.WARNING]
        errors = [r for r in logs.records if r.levelno >= logging.ERROR]
        self.assertEqual(len(warnings), 2)
        self.assertEqual(errors, [])
        self.assertIn("Select grade failed (attempt 1/3). Retrying in 1000ms", warnings[0].getMessage())

    def test_exhaustion_reraises_last_error(self):
        op = Flaky([RuntimeError("a"), RuntimeError("b"), RuntimeError("c")])

        with self.assertLogs(LOGGER, level="WARNING") as logs:
            with self.assertRaises(RuntimeError) as ctx:
                execute_with_retry(op, "Navigate", max_attempts=3, initial_delay=1.0,
                                   sleep=self.sleeps.append)

        self.assertEqual(str(ctx.exception), "c")
        self.assertEqual(op.calls, 3)
        errors = [r for r in logs.records if r.levelno == logging.ERROR]
        self.assertEqual(len(errors), 1)
        self.assertIn("Navigate failed after 3 attempts", errors[0].getMessage())

    def test_delay_is_capped(self):
        op = Flaky([ValueError()] * 3)

        with self.assertLogs(LOGGER, level="WARNING"):
            execute_with_retry(op, "Capped", max_attempts=4, initial_delay=10.0, max_delay=15.0,
                               sleep=self.sleeps.append)

        self.assertEqual(self.sleeps, [10.0, 15.0, 15.0])

    def test_single_attempt_never_sleeps(self):
        op = Flaky([RuntimeError("only")])

        with self.assertLogs(LOGGER, level="ERROR"):
            with self.assertRaises(RuntimeError):
                execute_with_retry(op, "Once", max_attempts=1, sleep=self.sleeps.append)

        self.assertEqual(self.sleeps, [])

    def test_invalid_attempt_count(self):
        with self.assertRaises(ValueError):
            execute_with_retry(lambda: None, "Nothing", max_attempts=0)

    def test_cancellation_is_not_retried(self):
        op = Flaky([OperationCancelled("stop")])

        with self.assertNoLogs(LOGGER, level="WARNING"):
            with self.assertRaises(OperationCancelled):
                execute_with_retry(op, "Cancelled", sleep=self.sleeps.append)

        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_configuration_cancel_is_not_retried(self):
        op = Flaky([ConfigurationCancelled("No selectors for XX course")])

        with self.assertRaises(ConfigurationCancelled):
            execute_with_retry(op, "Select course", sleep=self.sleeps.append)

        self.assertEqual(op.calls, 1)

    def test_cancel_event_checked_before_first_attempt(self):
        cancel = threading.Event()
        cancel.set()
        op = Flaky([])

        with self.assertRaises(OperationCancelled):
            execute_with_retry(op, "Never runs", cancel_event=cancel)

        self.assertEqual(op.calls, 0)

    def test_cancel_during_wait(self):
        cancel = threading.Event()

        def op():
            cancel.set()
            raise RuntimeError("flaky")

        with self.assertLogs(LOGGER, level="WARNING"):
            with self.assertRaises(OperationCancelled):
                execute_with_retry(op, "Wait", initial_delay=5.0, cancel_event=cancel)


if __name__ == "__main__":
    unittest.main()
