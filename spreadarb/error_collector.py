# spreadarb/error_collector.py
from collections import Counter
from typing import List


class ErrorCollector:
    """
    Counts noncritical errors (mostly ticker fetch failures) so they can be reported
    as a periodic summary instead of flooding the console.
    """
    HEADER = "Noncritical error summary: [Exception name]: [Error message] x [Count]"

    def __init__(self):
        self._errors: Counter = Counter()

    def collect(self, exchange: str, error: BaseException):
        self._errors[f"{exchange}: {type(error).__name__} {error}"] += 1

    def is_empty(self) -> bool:
        return not self._errors

    def clear(self):
        self._errors.clear()

    def report(self) -> List[str]:
        lines = [self.HEADER]
        lines.extend(f"{key} x {count}" for key, count in self._errors.items())
        return lines
