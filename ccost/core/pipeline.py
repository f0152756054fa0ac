"""
Usage report orchestration.

Runs Parser -> Deduplicator -> Pricing -> Aggregator over a set of JSONL
files. Files are processed on a thread pool; every worker shares one
deduplicator (whose check-and-insert is locked) and owns its own
aggregator. Aggregators are merged only after every worker has finished.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from ccost.config.loader import Settings
from ccost.config.logger import get_logger
from ccost.core.aggregator import Aggregator, UsageSummary
from ccost.core.dedup import Deduplicator
from ccost.core.errors import InputNotFoundError, NoUsableRecordsError
from ccost.core.parser import JsonlSource, ParseStats
from ccost.core.timezone import DateBucketer, Timeframe
from ccost.storage.models import UsageRecord
from ccost.storage.repository import LedgerStore

LOGGER = get_logger("ccost.pipeline")


@dataclass(frozen=True)
class UsageFilter:
    """Record filters applied before deduplication.

    ``since`` and ``until`` are inclusive report dates in the bucketer's
    timezone.
    """
    project: Optional[str] = None
    model: Optional[str] = None
    since: Optional[date] = None
    until: Optional[date] = None

    def __post_init__(self):
        """Validate the date range."""
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")

    @classmethod
    def for_timeframe(
        cls,
        timeframe: Timeframe,
        bucketer: DateBucketer,
        now: Optional[datetime] = None,
        project: Optional[str] = None,
        model: Optional[str] = None,
    ) -> "UsageFilter":
        """Filter covering a named timeframe in the bucketer's report dates."""
        since, until = bucketer.timeframe_dates(timeframe, now)
        return cls(project=project, model=model, since=since, until=until)

    def matches(self, record: UsageRecord, bucketer: DateBucketer) -> bool:
        if self.project is not None and record.project != self.project:
            return False
        if self.model is not None and record.model != self.model:
            return False
        if self.since is not None or self.until is not None:
            day = bucketer.bucket_date(record.timestamp)
            if self.since is not None and day < self.since:
                return False
            if self.until is not None and day > self.until:
                return False
        return True


def discover_files(paths: Iterable, projects_root: Optional[Path] = None) -> List[Tuple[Path, str]]:
    """Expand files and directories into (jsonl_file, project_name) pairs.

    Directories are searched recursively for ``*.jsonl``. The project name of
    a file is its first directory under ``projects_root`` when it lies there,
    otherwise its parent directory's name.

    Raises:
        InputNotFoundError: If a path does not exist
    """
    found: List[Tuple[Path, str]] = []
    seen = set()
    for raw in paths:
        path = Path(raw).expanduser()
        if not path.exists():
            raise InputNotFoundError(f"Input path does not exist: {path}")
        files = sorted(path.rglob("*.jsonl")) if path.is_dir() else [path]
        for file_path in files:
            resolved = file_path.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            found.append((file_path, _project_for(file_path, projects_root)))
    return found


def _project_for(file_path: Path, projects_root: Optional[Path]) -> str:
    if projects_root is not None:
        try:
            relative = file_path.resolve().relative_to(projects_root.expanduser().resolve())
        except ValueError:
            relative = None
        if relative is not None and len(relative.parts) > 1:
            return relative.parts[0]
    return file_path.parent.name or "Unknown"


def process_source(
    source: JsonlSource,
    deduplicator: Deduplicator,
    aggregator: Aggregator,
    usage_filter: Optional[UsageFilter] = None,
) -> None:
    """Parse, filter, classify and aggregate one source into ``aggregator``."""
    stats = ParseStats()
    try:
        for record in source.records(stats):
            if usage_filter is not None and not usage_filter.matches(record, aggregator.bucketer):
                continue
            aggregator.add(record, deduplicator.classify(record))
    finally:
        aggregator.parse_stats.merge(stats)


def aggregate_records(
    records: Iterable[UsageRecord],
    deduplicator: Deduplicator,
    aggregator: Aggregator,
) -> Aggregator:
    """Classify and aggregate already-parsed records."""
    for record in records:
        aggregator.add(record, deduplicator.classify(record))
    return aggregator


def run_usage_report(
    paths: Sequence,
    settings: Optional[Settings] = None,
    usage_filter: Optional[UsageFilter] = None,
    deduplicator: Optional[Deduplicator] = None,
) -> UsageSummary:
    """Produce a deduplicated usage summary for the given log files or directories.

    Args:
        paths: JSONL files and/or directories; defaults to the configured
            projects path when empty
        settings: Report settings; defaults when None
        usage_filter: Optional project/model/date filter
        deduplicator: Ledger to classify against; built from settings when None

    Returns:
        UsageSummary in the base currency

    Raises:
        InputNotFoundError: If an input path is missing
        NoUsableRecordsError: If input lines exist but none could be parsed
        LedgerWriteError: If the dedup ledger cannot be written
        PricingUnavailableError: If calculate mode meets an unpriced model with no default tier
    """
    settings = settings or Settings()
    projects_root = settings.resolved_projects_path
    files = discover_files(paths or [projects_root], projects_root)
    bucketer = DateBucketer(settings.timezone, settings.daily_cutoff_hour)

    store = None
    if deduplicator is None:
        if settings.ledger.persistent:
            store = LedgerStore(settings.database_path, flush_every=settings.ledger.flush_every)
        deduplicator = Deduplicator(store)

    def new_aggregator() -> Aggregator:
        return Aggregator(settings.pricing, settings.cost_mode, bucketer)

    def work(item: Tuple[Path, str]) -> Aggregator:
        file_path, project = item
        aggregator = new_aggregator()
        process_source(JsonlSource(file_path, project), deduplicator, aggregator, usage_filter)
        LOGGER.debug(
            "Processed log file",
            extra={"path": str(file_path), "accepted": aggregator.dedup_stats.accepted},
        )
        return aggregator

    try:
        with ThreadPoolExecutor(max_workers=settings.workers) as executor:
            partials = list(executor.map(work, files))
        deduplicator.flush()
    except BaseException:
        # Keys accepted by an aborted run were never aggregated
        if store is not None:
            store.close(commit=False)
        raise
    if store is not None:
        store.close()

    result = new_aggregator()
    for partial in partials:
        result.merge(partial)

    parse_stats = result.parse_stats
    if parse_stats.total_lines > 0 and parse_stats.parsed == 0:
        raise NoUsableRecordsError(parse_stats.total_lines, parse_stats.malformed)

    LOGGER.info(
        "Usage report complete",
        extra={
            "files": len(files),
            "accepted": result.dedup_stats.accepted,
            "duplicates": result.dedup_stats.duplicates,
            "malformed": parse_stats.malformed,
        },
    )
    return result.summary()
