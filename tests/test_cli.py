import io
import unittest
from contextlib import redirect_stdout
from unittest import mock

import cli
from config import Settings
from tests.fakes import export_sheet


class CliTests(unittest.TestCase):

    def run_cli(self, *argv):
        out = io.StringIO()
        with mock.patch.object(cli.Settings, "from_env", return_value=Settings(weekday_names=("Monday",))), \
                mock.patch.object(cli, "configure_logging"), \
                redirect_stdout(out):
            code = cli.main(list(argv))
        return code, out.getvalue()

    def test_dry_run_parse(self):
        with mock.patch("scraper.excel_parser.load_worksheet", return_value=export_sheet()):
            code, output = self.run_cli("parse", "BV20-1.xls", "--course", "BV20", "--grade", "1",
                                        "--group", "G1", "--dry-run")

        self.assertEqual(code, 0)
        self.assertIn("parsedSessions=24", output)
        self.assertIn("A: 12 sessions", output)
        self.assertIn("B: 12 sessions", output)

    def test_parse_requires_course(self):
        with self.assertRaises(SystemExit):
            with redirect_stdout(io.StringIO()), mock.patch("sys.stderr", io.StringIO()):
                cli.build_parser().parse_args(["parse", "x.xls", "--grade", "1", "--group", "G1"])


if __name__ == "__main__":
    unittest.main()
