import os
import unittest
from unittest import mock

from backend.settings import DEFAULT_DATABASE_URL, get_database_url, get_rule_timeout


class SettingsTests(unittest.TestCase):
    def test_rule_timeout_reads_environment(self) -> None:
        with mock.patch.dict(os.environ, {"RECURRING_RULE_TIMEOUT_SECONDS": "2.5"}):
            self.assertEqual(get_rule_timeout(), 2.5)

    def test_rule_timeout_zero_disables_limit(self) -> None:
        with mock.patch.dict(os.environ, {"RECURRING_RULE_TIMEOUT_SECONDS": "0"}):
            self.assertIsNone(get_rule_timeout())

    def test_malformed_rule_timeout_falls_back_to_default(self) -> None:
        with mock.patch.dict(os.environ, {"RECURRING_RULE_TIMEOUT_SECONDS": "soon"}):
            with self.assertLogs("backend.settings", level="WARNING"):
                self.assertEqual(get_rule_timeout(), 30.0)

    def test_database_url_default(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_database_url(), DEFAULT_DATABASE_URL)


if __name__ == "__main__":
    unittest.main()
