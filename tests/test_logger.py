import io
import json
import logging

from enforcement_orchestrator.utils.logger import (
    ContextTextFormatter,
    LoggerContext,
    StructuredFormatter,
    get_logger,
    set_log_context,
)


def _capture(name, formatter):
    logger = get_logger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger, stream


def test_structured_output_nests_context():
    logger, stream = _capture("tests.logger.json", StructuredFormatter())
    set_log_context(logger, component="executor")

    logger.info("Batch execution finished", extra={"batch_id": "b1", "completed": 3})

    entry = json.loads(stream.getvalue())
    assert entry["message"] == "Batch execution finished"
    assert entry["level"] == "INFO"
    assert entry["context"] == {"component": "executor", "batch_id": "b1", "completed": 3}


def test_explicit_extra_wins_over_standing_context():
    logger, stream = _capture("tests.logger.override", StructuredFormatter())
    set_log_context(logger, provider="spotify")

    logger.info("Circuit opened", extra={"provider": "apple_music"})

    assert json.loads(stream.getvalue())["context"]["provider"] == "apple_music"


def test_text_output_tags_context_keys():
    logger, stream = _capture("tests.logger.text", ContextTextFormatter())
    set_log_context(logger, component="worker_pool")

    with LoggerContext(logger, job_id="j1"):
        logger.info("Running job", extra={"attempt": 2})
    logger.info("Worker stopped")

    first, second = stream.getvalue().splitlines()
    assert "[worker_pool job_id=j1] Running job attempt=2" in first
    assert "[worker_pool] Worker stopped" in second
