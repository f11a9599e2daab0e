import logging
from contextlib import ContextDecorator
from typing import List, Optional


class _RecordCollector(logging.Handler):
    def __init__(self, records: List[logging.LogRecord], level: int):
        super().__init__(level)
        self.records = records

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class KeywordLogCapture(ContextDecorator):
    """Collect warning and error records emitted while one keyword runs.

    A handler is attached to the root logger for the duration of the block and
    removed on exit, also when the block raises. Counts feed the batch summary.
    """

    def __init__(self, keyword: Optional[str] = None, level: int = logging.WARNING, logger=None):
        self.keyword = keyword
        self.logger = logger or logging.getLogger()
        self.records: List[logging.LogRecord] = []
        self._handler = _RecordCollector(self.records, level)

    def __enter__(self):
        self.records.clear()
        self.logger.addHandler(self._handler)
        logging.debug("KeywordLogCapture start for keyword %s", self.keyword)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.logger.removeHandler(self._handler)
        if exc:
            logging.debug("KeywordLogCapture caught exception: %s", exc)
        logging.debug("KeywordLogCapture end for keyword %s", self.keyword)
        # Do not suppress exceptions
        return False

    @property
    def warning_count(self) -> int:
        return sum(1 for r in self.records if logging.WARNING <= r.levelno < logging.ERROR)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.records if r.levelno >= logging.ERROR)

    def messages(self) -> List[str]:
        return [record.getMessage() for record in self.records]
