"""
🧪 Unit Tests for the Logging Layer
File: tests/unit/test_logger.py

Run with: pytest tests/unit/test_logger.py -v
"""

import logging

import pytest

from config import CONFIG
from logger import LoggerFactory, get_logger

pytestmark = pytest.mark.unit


class TestLogger:

    def test_cached_per_name(self):
        assert get_logger("biomarker_forest.test") is get_logger("biomarker_forest.test")

    def test_track_time_records(self):
        logger = get_logger("biomarker_forest.test")
        LoggerFactory.get_performance_logger().reset()
        with logger.track_time("unit_op"):
            pass
        timings = logger.get_timings()
        assert len(timings["unit_op"]) == 1
        assert timings["unit_op"][0] >= 0

    def test_track_time_disabled(self):
        CONFIG.update("logging.log_performance", False)
        logger = get_logger("biomarker_forest.test")
        LoggerFactory.get_performance_logger().reset()
        with logger.track_time("skipped_op"):
            pass
        assert "skipped_op" not in logger.get_timings()

    def test_log_operation_levels(self, caplog):
        logger = get_logger("biomarker_forest.test")
        with caplog.at_level(logging.INFO, logger="biomarker_forest.test"):
            logger.log_operation("g_forest", "completed", rows=3)
            logger.log_operation("g_forest", "failed", reason="bad")
        assert "[g_forest] COMPLETED rows=3" in caplog.text
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_log_analysis(self, caplog):
        logger = get_logger("biomarker_forest.test")
        with caplog.at_level(logging.INFO, logger="biomarker_forest.test"):
            logger.log_analysis("Logistic regression", "rsp", 2, 200)
        assert "biomarkers=2, n=200" in caplog.text
