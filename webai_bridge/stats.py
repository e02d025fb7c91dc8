import json
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterator, Union

from .browser_automation import debug_print

DateLike = Union[str, date]

MAX_RANGE_DAYS = 366


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError as e:
        raise ValueError(f"invalid date {value!r}, expected YYYY-MM-DD") from e


def _iter_days(start: DateLike, end: DateLike) -> Iterator[date]:
    day, last = _as_date(start), _as_date(end)
    if (last - day).days >= MAX_RANGE_DAYS:
        raise ValueError(f"date range is limited to {MAX_RANGE_DAYS} days")
    while day <= last:
        yield day
        day += timedelta(days=1)


class RequestStats:
    """Per-day success/failure counters stored as `<data_dir>/logs/stats_YYYY-MM-DD.json`."""

    def __init__(self, data_dir: Union[str, Path] = "data") -> None:
        self.log_dir = Path(data_dir) / "logs"
        self._today = self._current_date()
        self._counts = {"success": 0, "failed": 0}

    @staticmethod
    def _current_date() -> date:
        return date.today()

    def _path(self, day: date) -> Path:
        return self.log_dir / f"stats_{day.isoformat()}.json"

    def _read(self, day: date) -> dict:
        try:
            with open(self._path(day), "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return {"success": 0, "failed": 0}
        if not isinstance(data, dict):
            return {"success": 0, "failed": 0}
        return {"success": int(data.get("success") or 0), "failed": int(data.get("failed") or 0)}

    def _save(self, day: date, counts: dict) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with open(self._path(day), "w", encoding="utf-8") as f:
            json.dump(counts, f, indent=2)

    def load_today_stats(self) -> dict:
        self._today = self._current_date()
        self._counts = self._read(self._today)
        return dict(self._counts)

    def _rollover(self) -> None:
        current = self._current_date()
        if current == self._today:
            return
        self._save(self._today, self._counts)
        debug_print(f"📅 Stats rolled over to {current.isoformat()}")
        self.load_today_stats()

    def increment_success(self) -> None:
        self._rollover()
        self._counts["success"] += 1
        self._save(self._today, self._counts)

    def increment_failed(self) -> None:
        self._rollover()
        self._counts["failed"] += 1
        self._save(self._today, self._counts)

    def get_today_stats(self) -> dict:
        if self._current_date() != self._today:
            return {"success": 0, "failed": 0}
        return dict(self._counts)

    def get_stats_range(self, start: DateLike, end: DateLike) -> dict:
        result = {"success": 0, "failed": 0, "days": 0}
        for day in _iter_days(start, end):
            if not self._path(day).exists():
                continue
            counts = self._read(day)
            result["success"] += counts["success"]
            result["failed"] += counts["failed"]
            result["days"] += 1
        return result

    def clear_stats_range(self, start: DateLike, end: DateLike) -> dict:
        deleted = 0
        for day in _iter_days(start, end):
            try:
                self._path(day).unlink()
            except FileNotFoundError:
                continue
            deleted += 1
            if day == self._today:
                self._counts = {"success": 0, "failed": 0}
        return {"deleted": deleted}
