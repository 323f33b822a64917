"""
Tests for log sink configuration.
"""

from loguru import logger

from projection_engine.logger import setup_logger


def test_records_tagged_with_component(tmp_path):
    log_file = tmp_path / "logs" / "engine.log"
    setup_logger(level="DEBUG", log_file=str(log_file))

    logger.info("unbound record")
    logger.bind(component="api").warning("bound record")
    logger.remove()

    lines = log_file.read_text().splitlines()
    unbound = next(line for line in lines if "unbound record" in line)
    bound = next(line for line in lines if "bound record" in line and "unbound" not in line)

    assert "| test_logger |" in unbound
    assert "| api " in bound
    assert "WARNING" in bound


def test_level_filters_file_sink(tmp_path):
    log_file = tmp_path / "engine.log"
    setup_logger(level="WARNING", log_file=str(log_file))

    logger.info("quiet")
    logger.error("loud")
    logger.remove()

    content = log_file.read_text()
    assert "loud" in content
    assert "quiet" not in content
