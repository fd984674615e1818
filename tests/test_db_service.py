import unittest
from datetime import datetime, timezone
from unittest import mock

from config import ConfigurationError, Settings
from db_service import InMemoryGateway, SupabaseGateway, session_to_row
from scraper.models import SessionRecord, SessionType

T0 = datetime(2025, 10, 1, 8, 0, tzinfo=timezone.utc)


def make_session(course_id=1, group_id=4):
    return SessionRecord(
        course_id=course_id, class_id=2, instructor_id=3, room_id=5, group_id=group_id,
        start_at=datetime(2025, 10, 6, 6, 15, tzinfo=timezone.utc),
        finish_at=datetime(2025, 10, 6, 8, 0, tzinfo=timezone.utc),
        type=SessionType.LAB_EXERCISE,
    )


class InMemoryGatewayTests(unittest.TestCase):

    def setUp(self):
        self.gateway = InMemoryGateway()

    def test_ensure_is_idempotent(self):
        course_id = self.gateway.ensure_course("BV20", 1, T0)
        self.assertEqual(self.gateway.ensure_course("BV20", 1, T0), course_id)
        self.assertNotEqual(self.gateway.ensure_course("BV20", 1, T0, project="VP1"), course_id)

        self.assertEqual(self.gateway.ensure_group("A", course_id), self.gateway.ensure_group("A", course_id))
        self.assertNotEqual(self.gateway.ensure_group("A", course_id), self.gateway.ensure_group("A", course_id + 1))
        self.assertEqual(self.gateway.ensure_room("G2-P01"), self.gateway.ensure_room("G2-P01"))

    def test_last_checked_for_unknown_course(self):
        with self.assertRaises(LookupError):
            self.gateway.update_course_last_checked("BV20", 9, T0)

    def test_rollback_restores_state(self):
        self.gateway.add_sessions([make_session()])

        def action():
            self.gateway.delete_sessions_for_course(1)
            self.gateway.ensure_room("new")
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.gateway.run_in_transaction(action)

        self.assertEqual(self.gateway.sessions, [make_session()])
        self.assertEqual(self.gateway.rooms, {})

    def test_nested_transaction_joins_outer(self):
        result = self.gateway.run_in_transaction(
            lambda: self.gateway.run_in_transaction(lambda: self.gateway.add_sessions([make_session()])) or "done")

        self.assertEqual(result, "done")
        self.assertEqual(len(self.gateway.sessions), 1)


class SupabaseGatewayTests(unittest.TestCase):

    def setUp(self):
        self.client = mock.MagicMock()
        self.gateway = SupabaseGateway(self.client)

    def test_from_settings_requires_credentials(self):
        with self.assertRaises(ConfigurationError):
            SupabaseGateway.from_settings(Settings())

    def test_session_row_is_json_ready(self):
        row = session_to_row(make_session())
        self.assertEqual(row["type"], "LabExercise")
        self.assertEqual(row["start_at"], "2025-10-06T06:15:00+00:00")
        self.assertEqual(row["group_id"], 4)

    def test_ensure_room_inserts_when_missing(self):
        table = self.client.table.return_value
        table.select.return_value.eq.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
        table.insert.return_value.execute.return_value.data = [{"id": 9}]

        self.assertEqual(self.gateway.ensure_room("G2-P01"), 9)
        table.insert.assert_called_once_with({"code": "G2-P01", "building": "G2-P01"})

    def test_ensure_instructor_reuses_existing(self):
        table = self.client.table.return_value
        table.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = [{"id": 3}]

        self.assertEqual(self.gateway.ensure_instructor("Dr. Novak"), 3)
        table.insert.assert_not_called()

    def test_transaction_replaces_through_database_function(self):
        session = make_session()

        def replace():
            self.gateway.delete_sessions_for_course(1)
            self.gateway.add_sessions([session])

        self.gateway.run_in_transaction(replace)

        self.client.rpc.assert_called_once_with(
            "replace_course_sessions",
            {"p_course_ids": [1], "p_sessions": [session_to_row(session)]},
        )
        self.client.table.assert_not_called()

    def test_failed_action_writes_nothing(self):
        def replace():
            self.gateway.delete_sessions_for_course(1)
            raise RuntimeError("row failed")

        with self.assertRaises(RuntimeError):
            self.gateway.run_in_transaction(replace)

        self.client.rpc.assert_not_called()
        self.client.table.assert_not_called()

    def test_writes_outside_transaction_go_straight_through(self):
        self.gateway.delete_sessions_for_course(1)
        self.client.table.assert_called_with("sessions")
        self.client.rpc.assert_not_called()


if __name__ == "__main__":
    unittest.main()
