import logging
import os
import tempfile
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from eventstore.utils.event_logger import EventLogger


class EventLoggerSyncTest(unittest.TestCase):
    def test_sync_reads_appended_lines(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = os.path.join(tmpdir, "log.txt")
            writer = EventLogger(log_path)
            reader = EventLogger(log_path)
            writer.log("Attached partition archive1")
            reader.sync()
            events = reader.get_events()
            self.assertTrue(any("archive1" in e for e in events))
            writer.close()
            reader.close()

    def test_warnings_are_marked(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            logger = EventLogger(os.path.join(tmpdir, "log.txt"))
            logger.log("Hot partition narrowed")
            logger.log("Range [0, 100) is no longer served", logging.WARNING)
            events = logger.get_events()
            self.assertFalse(events[0].startswith("WARNING"))
            self.assertIn("WARNING: Range [0, 100)", events[1])
            logger.close()


if __name__ == "__main__":
    unittest.main()
