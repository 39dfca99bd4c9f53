import io
import logging
import os
import unittest
from unittest import mock

from finance_core import logging_setup


class LoggingSetupTests(unittest.TestCase):
    def tearDown(self) -> None:
        logger = logging.getLogger("finance_core")
        if logging_setup._handler is not None:
            logger.removeHandler(logging_setup._handler)
        logging_setup._handler = None
        logger.setLevel(logging.NOTSET)
        logger.propagate = True

    def test_configure_attaches_one_handler(self) -> None:
        stream = io.StringIO()

        logging_setup.configure_logging("debug", stream=stream)
        logging_setup.configure_logging("debug", stream=stream)
        logging_setup.get_logger("finance_core.store").debug("store ready")

        self.assertEqual(stream.getvalue().count("store ready"), 1)
        self.assertIn("finance_core.store DEBUG", stream.getvalue())

    def test_level_comes_from_environment(self) -> None:
        stream = io.StringIO()

        with mock.patch.dict(os.environ, {"FINANCE_CORE_LOG_LEVEL": "warning"}):
            logging_setup.configure_logging(stream=stream)
        logger = logging_setup.get_logger("finance_core.reconciliation")
        logger.info("hidden")
        logger.warning("shown")

        self.assertNotIn("hidden", stream.getvalue())
        self.assertIn("shown", stream.getvalue())

    def test_unknown_level_falls_back_to_info(self) -> None:
        logging_setup.configure_logging("chatty", stream=io.StringIO())

        self.assertEqual(logging.getLogger("finance_core").level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
