import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from stream_checkpoint.utils.logging import LOG_CONFIG_ENV, get_logger, setup_logging


class TestLoggingSetup(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self):
        logging.getLogger("stream_checkpoint").setLevel(logging.NOTSET)
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_get_logger_namespaces_names(self):
        self.assertEqual(get_logger("driver").name, "stream_checkpoint.driver")
        self.assertEqual(get_logger("stream_checkpoint.coordinator").name, "stream_checkpoint.coordinator")

    def test_yaml_config_from_env(self):
        path = os.path.join(self.tmp_dir, "logging.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write(
                "version: 1\n"
                "disable_existing_loggers: false\n"
                "loggers:\n"
                "  stream_checkpoint:\n"
                "    level: DEBUG\n"
            )
        with patch.dict(os.environ, {LOG_CONFIG_ENV: path}):
            setup_logging("does-not-exist.yaml")
        self.assertEqual(logging.getLogger("stream_checkpoint").level, logging.DEBUG)

    def test_level_override(self):
        path = os.path.join(self.tmp_dir, "logging.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("version: 1\ndisable_existing_loggers: false\n")
        setup_logging(path, level="warning")
        self.assertEqual(logging.getLogger("stream_checkpoint").level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
