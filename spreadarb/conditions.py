# spreadarb/conditions.py
import logging
import os
from datetime import datetime, timezone
from typing import Optional


class ConditionService:
    """
    Sentinel files that let an operator steer the bot while it runs.
    Create the file to raise the condition, the bot deletes it once handled.
    """
    FORCE_OPEN = "force-open"
    FORCE_CLOSE = "force-close"
    EXIT_WHEN_IDLE = "exit-when-idle"
    STATUS = "status"
    BLACKOUT = "blackout"

    def __init__(self, logger: logging.Logger, directory: str = "."):
        self.logger = logger
        self.directory = directory

    def _path(self, name: str) -> str:
        return os.path.join(self.directory, name)

    def _clear(self, name: str):
        try:
            os.remove(self._path(name))
        except FileNotFoundError:
            pass

    def is_force_open_condition(self, pair: str, long_exchange: str, short_exchange: str) -> bool:
        """
        The force-open file names the trade to open, e.g. `BTC/USD kraken/binance`.
        """
        path = self._path(self.FORCE_OPEN)
        if not os.path.exists(path):
            return False

        try:
            with open(path, "r") as f:
                wanted = f.read().strip()
        except OSError as e:
            self.logger.warning(f"Unable to read '{self.FORCE_OPEN}': {e}")
            return False

        return wanted == f"{pair} {long_exchange}/{short_exchange}"

    def clear_force_open_condition(self):
        self._clear(self.FORCE_OPEN)

    def is_force_close_condition(self) -> bool:
        return os.path.exists(self._path(self.FORCE_CLOSE))

    def clear_force_close_condition(self):
        self._clear(self.FORCE_CLOSE)

    def is_exit_when_idle_condition(self) -> bool:
        return os.path.exists(self._path(self.EXIT_WHEN_IDLE))

    def clear_exit_when_idle_condition(self):
        self._clear(self.EXIT_WHEN_IDLE)

    def is_status_condition(self) -> bool:
        return os.path.exists(self._path(self.STATUS))

    def clear_status_condition(self):
        self._clear(self.STATUS)

    def is_blackout_condition(self, exchange: str, now: Optional[datetime] = None) -> bool:
        """
        Each line of the blackout file is `exchange,startISO,endISO`.
        """
        path = self._path(self.BLACKOUT)
        if not os.path.exists(path):
            return False

        try:
            with open(path, "r") as f:
                lines = f.read().splitlines()
        except OSError as e:
            self.logger.error(f"Blackout file exists but cannot be read: {e}")
            return False

        now = now or datetime.now(timezone.utc)
        return any(self._in_window(line, now) for line in lines if line.startswith(exchange))

    def _in_window(self, line: str, now: datetime) -> bool:
        parts = line.split(",")
        if len(parts) != 3:
            return False

        try:
            start = datetime.fromisoformat(parts[1].strip())
            end = datetime.fromisoformat(parts[2].strip())
        except ValueError:
            self.logger.warning(f"Ignoring malformed blackout line: {line}")
            return False

        # windows without an offset are read as UTC
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)

        return start < now < end
