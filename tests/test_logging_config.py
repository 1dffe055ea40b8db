import asyncio
import logging

from vodclip.logging_config import JobIdFilter, _parse_module_levels, bind_job, get_logger


def test_parse_module_levels():
    levels = _parse_module_levels("ffmpeg=DEBUG; vodclip.server:WARNING, bogus=LOUD,,noequals")
    assert levels == {"vodclip.ffmpeg": logging.DEBUG, "vodclip.server": logging.WARNING}
    assert _parse_module_levels("") == {}


def test_get_logger_prefixes_namespace():
    assert get_logger("cli").name == "vodclip.cli"
    assert get_logger("vodclip.jobs").name == "vodclip.jobs"


def test_job_id_filter_uses_bound_job():
    def record() -> logging.LogRecord:
        rec = logging.LogRecord("vodclip.test", logging.INFO, __file__, 1, "msg", (), None)
        JobIdFilter().filter(rec)
        return rec

    async def in_job() -> str:
        bind_job("job-42")
        return record().job_id

    assert asyncio.run(in_job()) == "job-42"
    assert record().job_id == "-"
