import os
import sys
import json
import logging
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from logging_config import JSONFormatter, setup_logging


class JSONFormatterTest(unittest.TestCase):
    def make_record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            "maintenance_jobs", logging.INFO, __file__, 10, "[%s] done", ("expire-goals",), None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_job_and_goal_extras(self) -> None:
        record = self.make_record(job_name="expire-goals", goal_id=4, request_id="x")
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["message"], "[expire-goals] done")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["job_name"], "expire-goals")
        self.assertEqual(entry["goal_id"], 4)
        self.assertNotIn("request_id", entry)

    def test_exception_is_serialized(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self.make_record()
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        self.assertIn("RuntimeError: boom", entry["exception"])


class SetupLoggingTest(unittest.TestCase):
    def tearDown(self) -> None:
        setup_logging("text", logging.WARNING)

    def test_json_handler_installed_once(self) -> None:
        setup_logging("json", logging.DEBUG)
        setup_logging("json", logging.DEBUG)
        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0].formatter, JSONFormatter)
        self.assertEqual(root.level, logging.DEBUG)


if __name__ == "__main__":
    unittest.main()
