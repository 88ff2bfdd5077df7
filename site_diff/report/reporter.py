# File: site_diff/report/reporter.py
"""site_diff.report.reporter: Классификация ошибок и итог запуска."""

from __future__ import annotations

import asyncio
import json
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union

from site_diff.errors import ErrorKind, SitemapParseError
from site_diff.logger import get_logger
from site_diff.retry import error_message

__all__ = ["FailureRecord", "RunSummary", "RunReporter", "classify_error", "Outcome"]

log = get_logger("report")


class Outcome:
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


# Порядок важен: первое совпадение побеждает.
_RULES: Tuple[Tuple[ErrorKind, Pattern[str]], ...] = (
    (ErrorKind.NETWORK_TIMEOUT, re.compile(r"timeout|timed out|aborted", re.IGNORECASE)),
    (ErrorKind.SCREENSHOT_FAILURE, re.compile(r"screenshot|capture", re.IGNORECASE)),
    (ErrorKind.FILE_IO_ERROR, re.compile(r"not found|no such file|permission", re.IGNORECASE)),
    (ErrorKind.COMPARISON_ERROR, re.compile(r"compar|diff", re.IGNORECASE)),
)


def classify_error(error: Any) -> ErrorKind:
    """Относит ошибку к одной из категорий ErrorKind; никогда не бросает исключений."""
    try:
        if isinstance(error, SitemapParseError):
            return ErrorKind.PARSE_FAILURE
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.NETWORK_TIMEOUT
        text = f"{type(error).__name__}: {error}" if isinstance(error, BaseException) else str(error)
        for kind, pattern in _RULES:
            if pattern.search(text):
                return kind
        if isinstance(error, (FileNotFoundError, PermissionError)):
            return ErrorKind.FILE_IO_ERROR
        kind = getattr(error, "kind", None)
        if isinstance(kind, ErrorKind):
            return kind
    except Exception as exc:  # pragma: no cover
        log.debug("Cannot classify %s: %r", type(error).__name__, exc)
    return ErrorKind.UNKNOWN


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """Одна ошибка запуска; после создания не изменяется."""

    url: str
    kind: ErrorKind
    message: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "kind": self.kind.value, "message": self.message, "timestamp": self.timestamp}


@dataclass(slots=True)
class RunSummary:
    """Итог запуска: счётчики, разбивка ошибок по видам и полный список ошибок."""

    processed: int = 0
    with_changes: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    by_kind: Dict[str, int] = field(default_factory=dict)
    failures: List[FailureRecord] = field(default_factory=list)
    changed_urls: List[str] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""
    duration: float = 0.0
    run_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failures"] = [f.to_dict() for f in self.failures]
        return data

    def json(self, *, pretty: bool = False) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2 if pretty else None)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunReporter:
    """Накопитель результатов запуска.

    Все обновления счётчиков выполняются в потоке цикла событий, поэтому
    параллельные задачи не теряют инкременты. Каждая ошибка дописывается
    одной JSON-строкой в журнал ошибок, если он задан.
    """

    def __init__(
        self,
        error_log: Union[str, Path, None] = None,
        *,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.error_log = Path(error_log) if error_log else None
        self._clock = clock
        self._started = clock()
        self._counts: Counter[str] = Counter()
        self._failures: List[FailureRecord] = []
        self._changed: List[str] = []
        self._summary: Optional[RunSummary] = None

    def classify(self, error: Any) -> ErrorKind:
        return classify_error(error)

    def record_failure(
        self, url: str, error: Any, kind: Optional[ErrorKind] = None, *, count: bool = True
    ) -> FailureRecord:
        """Классифицирует ошибку, сохраняет запись и дописывает её в журнал.

        count=False: запись не относится к целевой странице (например, упавший
        вложенный sitemap) и не попадает в счётчики processed/failed.
        """
        try:
            message = error_message(error) if isinstance(error, BaseException) else str(error)
        except Exception:  # pragma: no cover
            message = repr(error)
        record = FailureRecord(
            url=url,
            kind=kind or self.classify(error),
            message=message,
            timestamp=self._clock().isoformat(),
        )
        self._failures.append(record)
        if count:
            self._counts[Outcome.FAILED] += 1
        log.debug("Failure [%s] %s: %s", record.kind.value, url, message)
        self._append_log(record)
        return record

    def record_outcome(self, url: str, outcome: str) -> None:
        """Учитывает успешный (changed/unchanged) или пропущенный результат."""
        self._counts[outcome] += 1
        if outcome == Outcome.CHANGED:
            self._changed.append(url)

    @property
    def failures(self) -> List[FailureRecord]:
        return list(self._failures)

    @property
    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def finalize(self, run_dir: Union[str, Path, None] = None) -> RunSummary:
        """Формирует RunSummary; повторный вызов возвращает тот же объект."""
        if self._summary is not None:
            return self._summary
        finished = self._clock()
        by_kind = Counter(f.kind.value for f in self._failures)
        processed = sum(self._counts[o] for o in (Outcome.CHANGED, Outcome.UNCHANGED, Outcome.FAILED))
        self._summary = RunSummary(
            processed=processed,
            with_changes=self._counts[Outcome.CHANGED],
            unchanged=self._counts[Outcome.UNCHANGED],
            failed=self._counts[Outcome.FAILED],
            skipped=self._counts[Outcome.SKIPPED],
            by_kind=dict(by_kind),
            failures=list(self._failures),
            changed_urls=list(self._changed),
            started_at=self._started.isoformat(),
            finished_at=finished.isoformat(),
            duration=max(0.0, (finished - self._started).total_seconds()),
            run_dir=str(run_dir) if run_dir else None,
        )
        return self._summary

    def _append_log(self, record: FailureRecord) -> None:
        if self.error_log is None:
            return
        try:
            self.error_log.parent.mkdir(parents=True, exist_ok=True)
            with self.error_log.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        except OSError as exc:
            log.warning("Cannot append to error log %s: %s", self.error_log, exc)
