"""
Processing Budget Governor

Caps how much content each tenant may send through chunking and embedding
per calendar day. Usage is kept in a keyed counter store (tenant + day);
a record for an earlier day never counts toward today, so no cleanup job
is needed.

The governor only gates the indexing path. Search is never budgeted.
"""

import math
import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

DAILY_FILE_LIMIT = 10
DAILY_BYTE_LIMIT = 250 * MIB
DEFAULT_ESTIMATED_FILE_BYTES = 5 * MIB

# Conservative size guesses for files whose size is unknown
FILE_TYPE_ESTIMATES = {
    "text": 512 * 1024,
    "document": 3 * MIB,
    "spreadsheet": 3 * MIB,
    "image": 4 * MIB,
    "pdf": 6 * MIB,
    "audio": 12 * MIB,
    "video": 25 * MIB,
}

# Cost estimate heuristics
CHARS_PER_BYTE = 2.5
MIN_EXTRACTED_CHARS = 2_000
MAX_EXTRACTED_CHARS = 50_000
CHARS_PER_PARENT_CHUNK = 4_800
CHARS_PER_TOKEN = 4
SUMMARY_TOKENS = 300


@dataclass
class BudgetLimits:
    """Daily processing caps per tenant."""
    daily_file_limit: int = DAILY_FILE_LIMIT
    daily_byte_limit: int = DAILY_BYTE_LIMIT


@dataclass
class ProcessingUsage:
    """Files and bytes processed by a tenant on one day."""
    day: date
    files_processed: int = 0
    bytes_processed: int = 0

    def to_dict(self) -> dict:
        return {
            "day": self.day.isoformat(),
            "files_processed": self.files_processed,
            "bytes_processed": self.bytes_processed,
        }


@dataclass
class BudgetCheck:
    """Outcome of a budget check. Rejection is a value, not an exception."""
    allowed: bool
    remaining_files: int
    remaining_bytes: int
    usage: ProcessingUsage
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "remaining_files": self.remaining_files,
            "remaining_bytes": self.remaining_bytes,
            "usage": self.usage.to_dict(),
        }


@dataclass
class ProcessingEstimate:
    """Rough pre-processing cost preview."""
    extracted_chars: int
    embedding_chunks: int
    total_tokens: int

    def to_dict(self) -> dict:
        return {
            "extracted_chars": self.extracted_chars,
            "embedding_chunks": self.embedding_chunks,
            "total_tokens": self.total_tokens,
        }


# =============================================================================
# Helpers
# =============================================================================

def _clamp_count(value) -> int:
    """Floor to a non-negative int; non-numeric or non-finite becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, math.floor(number))


def normalize_bytes(file_size_bytes: Optional[float]) -> Optional[int]:
    """Return a usable positive byte count, or None when the size is unknown."""
    if file_size_bytes is None:
        return None
    try:
        number = float(file_size_bytes)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return int(number)


def estimate_file_bytes_by_type(file_type: Optional[str]) -> int:
    """Conservative size estimate for a file type (text, pdf, audio, ...)."""
    return FILE_TYPE_ESTIMATES.get((file_type or "").lower(), DEFAULT_ESTIMATED_FILE_BYTES)


def resolve_file_bytes(
    file_size_bytes: Optional[float] = None,
    file_type: Optional[str] = None,
) -> int:
    """Known size if usable, otherwise the per-type estimate."""
    known = normalize_bytes(file_size_bytes)
    if known is not None:
        return known
    return estimate_file_bytes_by_type(file_type)


def estimate_processing_cost(file_size_bytes: Optional[float] = None) -> ProcessingEstimate:
    """
    Estimate extraction, summary and embedding cost for a file.

    Extracted text is assumed to scale with file size (2.5 chars per byte)
    within [2 000, 50 000] chars. Not billing-accurate.
    """
    size = normalize_bytes(file_size_bytes) or DEFAULT_ESTIMATED_FILE_BYTES
    extracted_chars = min(MAX_EXTRACTED_CHARS, max(MIN_EXTRACTED_CHARS, round(size * CHARS_PER_BYTE)))
    embedding_chunks = max(1, math.ceil(extracted_chars / CHARS_PER_PARENT_CHUNK))
    extraction_tokens = math.ceil(extracted_chars / CHARS_PER_TOKEN)
    embedding_tokens = math.ceil(extracted_chars / CHARS_PER_TOKEN)
    return ProcessingEstimate(
        extracted_chars=extracted_chars,
        embedding_chunks=embedding_chunks,
        total_tokens=extraction_tokens + SUMMARY_TOKENS + embedding_tokens,
    )


def format_file_size(num_bytes: float) -> str:
    """Human readable size: 1536 -> '1.5 KB', 250 MiB -> '250 MB'."""
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {units[unit]}"


# =============================================================================
# Usage stores
# =============================================================================

class UsageStore:
    """Keyed (client_id, day) counter store."""

    def get(self, client_id: str, day: date) -> ProcessingUsage:
        raise NotImplementedError

    def add(self, client_id: str, day: date, files: int, num_bytes: int) -> ProcessingUsage:
        """Unconditionally add to the counters."""
        raise NotImplementedError

    def add_if_within(
        self,
        client_id: str,
        day: date,
        files: int,
        num_bytes: int,
        limits: BudgetLimits,
    ) -> Optional[ProcessingUsage]:
        """Add only if the new totals stay within limits. None when rejected."""
        raise NotImplementedError

    def subtract(self, client_id: str, day: date, files: int, num_bytes: int) -> ProcessingUsage:
        """Take back usage, never going below zero."""
        raise NotImplementedError


class InMemoryUsageStore(UsageStore):
    """Process-local usage counters, safe across threads."""

    def __init__(self):
        self._usage: dict[tuple[str, date], ProcessingUsage] = {}
        self._lock = threading.Lock()

    def get(self, client_id: str, day: date) -> ProcessingUsage:
        with self._lock:
            usage = self._usage.get((client_id, day))
            if usage is None:
                return ProcessingUsage(day=day)
            return ProcessingUsage(day, usage.files_processed, usage.bytes_processed)

    def add(self, client_id: str, day: date, files: int, num_bytes: int) -> ProcessingUsage:
        with self._lock:
            usage = self._usage.setdefault((client_id, day), ProcessingUsage(day=day))
            usage.files_processed += files
            usage.bytes_processed += num_bytes
            return ProcessingUsage(day, usage.files_processed, usage.bytes_processed)

    def add_if_within(
        self,
        client_id: str,
        day: date,
        files: int,
        num_bytes: int,
        limits: BudgetLimits,
    ) -> Optional[ProcessingUsage]:
        with self._lock:
            usage = self._usage.get((client_id, day)) or ProcessingUsage(day=day)
            if (
                usage.files_processed + files > limits.daily_file_limit
                or usage.bytes_processed + num_bytes > limits.daily_byte_limit
            ):
                return None
            usage.files_processed += files
            usage.bytes_processed += num_bytes
            self._usage[(client_id, day)] = usage
            return ProcessingUsage(day, usage.files_processed, usage.bytes_processed)

    def subtract(self, client_id: str, day: date, files: int, num_bytes: int) -> ProcessingUsage:
        with self._lock:
            usage = self._usage.get((client_id, day))
            if usage is None:
                return ProcessingUsage(day=day)
            usage.files_processed = max(0, usage.files_processed - files)
            usage.bytes_processed = max(0, usage.bytes_processed - num_bytes)
            return ProcessingUsage(day, usage.files_processed, usage.bytes_processed)

    def clear(self) -> None:
        with self._lock:
            self._usage.clear()


class PostgresUsageStore(UsageStore):
    """
    Usage counters in the processing_usage table.

    add_if_within() is a single conditional upsert, so concurrent workers
    cannot both pass a check and overshoot the cap.
    """

    def __init__(self, document_store):
        self.store = document_store

    def get(self, client_id: str, day: date) -> ProcessingUsage:
        with self.store.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT files_processed, bytes_processed FROM processing_usage
                    WHERE client_id = %s AND day = %s
                    """,
                    (client_id, day),
                )
                row = cur.fetchone()
        if not row:
            return ProcessingUsage(day=day)
        return ProcessingUsage(day, int(row["files_processed"]), int(row["bytes_processed"]))

    def add(self, client_id: str, day: date, files: int, num_bytes: int) -> ProcessingUsage:
        with self.store.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO processing_usage (client_id, day, files_processed, bytes_processed)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (client_id, day)
                        DO UPDATE SET
                            files_processed = processing_usage.files_processed + EXCLUDED.files_processed,
                            bytes_processed = processing_usage.bytes_processed + EXCLUDED.bytes_processed
                        RETURNING files_processed, bytes_processed
                        """,
                        (client_id, day, files, num_bytes),
                    )
                    row = cur.fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return ProcessingUsage(day, int(row["files_processed"]), int(row["bytes_processed"]))

    def add_if_within(
        self,
        client_id: str,
        day: date,
        files: int,
        num_bytes: int,
        limits: BudgetLimits,
    ) -> Optional[ProcessingUsage]:
        with self.store.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO processing_usage (client_id, day, files_processed, bytes_processed)
                        SELECT %s, %s, %s, %s
                        WHERE %s <= %s AND %s <= %s
                        ON CONFLICT (client_id, day)
                        DO UPDATE SET
                            files_processed = processing_usage.files_processed + EXCLUDED.files_processed,
                            bytes_processed = processing_usage.bytes_processed + EXCLUDED.bytes_processed
                        WHERE processing_usage.files_processed + EXCLUDED.files_processed <= %s
                          AND processing_usage.bytes_processed + EXCLUDED.bytes_processed <= %s
                        RETURNING files_processed, bytes_processed
                        """,
                        (
                            client_id, day, files, num_bytes,
                            files, limits.daily_file_limit,
                            num_bytes, limits.daily_byte_limit,
                            limits.daily_file_limit, limits.daily_byte_limit,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        if not row:
            return None
        return ProcessingUsage(day, int(row["files_processed"]), int(row["bytes_processed"]))

    def subtract(self, client_id: str, day: date, files: int, num_bytes: int) -> ProcessingUsage:
        with self.store.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE processing_usage
                        SET files_processed = GREATEST(0, files_processed - %s),
                            bytes_processed = GREATEST(0, bytes_processed - %s)
                        WHERE client_id = %s AND day = %s
                        RETURNING files_processed, bytes_processed
                        """,
                        (files, num_bytes, client_id, day),
                    )
                    row = cur.fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        if not row:
            return ProcessingUsage(day=day)
        return ProcessingUsage(day, int(row["files_processed"]), int(row["bytes_processed"]))


# =============================================================================
# Governor
# =============================================================================

class ProcessingBudgetGovernor:
    """
    Accepts or rejects indexing work against each tenant's daily budget.

    Usage:
        governor = ProcessingBudgetGovernor()

        # Preview a batch without touching usage
        check = governor.check_budget(client_id, file_count=3, total_bytes=12_000_000)

        # Check and commit one file atomically before indexing it
        check = governor.try_reserve(client_id, file_size_bytes=len(data))
        if not check.allowed:
            print(check.reason)
    """

    def __init__(
        self,
        usage_store: Optional[UsageStore] = None,
        limits: Optional[BudgetLimits] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        """
        Initialize the governor.

        Args:
            usage_store: Counter store. In-memory if not provided.
            limits: Daily caps. Defaults to 10 files and 250 MiB.
            today: Clock returning the current day (injectable for tests)
        """
        self.usage_store = usage_store or InMemoryUsageStore()
        self.limits = limits or BudgetLimits()
        self._today = today or date.today

    def get_usage(self, client_id: str) -> ProcessingUsage:
        """Today's usage for a tenant (zero if nothing recorded today)."""
        return self.usage_store.get(client_id, self._today())

    def _evaluate(self, usage: ProcessingUsage, file_count: int, total_bytes: int) -> BudgetCheck:
        remaining_files = max(0, self.limits.daily_file_limit - usage.files_processed)
        remaining_bytes = max(0, self.limits.daily_byte_limit - usage.bytes_processed)

        reason = None
        if usage.files_processed + file_count > self.limits.daily_file_limit:
            reason = f"Daily file limit reached ({self.limits.daily_file_limit}/day)."
        elif usage.bytes_processed + total_bytes > self.limits.daily_byte_limit:
            reason = f"Daily data limit reached ({format_file_size(self.limits.daily_byte_limit)}/day)."

        return BudgetCheck(
            allowed=reason is None,
            reason=reason,
            remaining_files=remaining_files,
            remaining_bytes=remaining_bytes,
            usage=usage,
        )

    def check_budget(self, client_id: str, file_count: int, total_bytes: float) -> BudgetCheck:
        """
        Check whether a workload fits in today's remaining budget.

        Never changes stored usage.

        Args:
            client_id: Tenant identifier
            file_count: Number of files in the workload
            total_bytes: Combined size of the workload

        Returns:
            BudgetCheck with a reason string when rejected
        """
        usage = self.get_usage(client_id)
        return self._evaluate(usage, _clamp_count(file_count), _clamp_count(total_bytes))

    def check_file(
        self,
        client_id: str,
        file_size_bytes: Optional[float] = None,
        file_type: Optional[str] = None,
    ) -> BudgetCheck:
        """Check a single file, estimating its size by type when unknown."""
        return self.check_budget(client_id, 1, resolve_file_bytes(file_size_bytes, file_type))

    def reserve(
        self,
        client_id: str,
        file_size_bytes: Optional[float] = None,
        file_type: Optional[str] = None,
    ) -> ProcessingUsage:
        """
        Commit one file's usage after a successful check.

        Args:
            client_id: Tenant identifier
            file_size_bytes: File size; estimated by type when unknown
            file_type: Type used for the estimate (text, pdf, audio, ...)

        Returns:
            Updated usage for today
        """
        num_bytes = resolve_file_bytes(file_size_bytes, file_type)
        usage = self.usage_store.add(client_id, self._today(), 1, num_bytes)
        logger.info(
            f"Reserved processing budget for {client_id}: "
            f"{usage.files_processed} files, {format_file_size(usage.bytes_processed)} today"
        )
        return usage

    def try_reserve(
        self,
        client_id: str,
        file_size_bytes: Optional[float] = None,
        file_type: Optional[str] = None,
    ) -> BudgetCheck:
        """
        Check and reserve one file in a single atomic step.

        Returns:
            BudgetCheck; when allowed, usage already includes the file
        """
        day = self._today()
        num_bytes = resolve_file_bytes(file_size_bytes, file_type)
        updated = self.usage_store.add_if_within(client_id, day, 1, num_bytes, self.limits)
        if updated is None:
            check = self._evaluate(self.usage_store.get(client_id, day), 1, num_bytes)
            if check.allowed:
                # Another worker took the last of the budget between the two reads
                check = BudgetCheck(
                    allowed=False,
                    reason="Daily processing budget exhausted.",
                    remaining_files=check.remaining_files,
                    remaining_bytes=check.remaining_bytes,
                    usage=check.usage,
                )
            logger.info(f"Processing budget rejected for {client_id}: {check.reason}")
            return check

        return BudgetCheck(
            allowed=True,
            remaining_files=max(0, self.limits.daily_file_limit - updated.files_processed),
            remaining_bytes=max(0, self.limits.daily_byte_limit - updated.bytes_processed),
            usage=updated,
        )

    def release(
        self,
        client_id: str,
        file_size_bytes: Optional[float] = None,
        file_type: Optional[str] = None,
        day: Optional[date] = None,
    ) -> ProcessingUsage:
        """
        Give back one reserved file, e.g. when indexing failed after try_reserve().

        Args:
            client_id: Tenant identifier
            file_size_bytes: Size that was reserved
            file_type: Type used for the estimate when the size was unknown
            day: Day the reservation was made on (today if None)

        Returns:
            Updated usage for that day
        """
        num_bytes = resolve_file_bytes(file_size_bytes, file_type)
        usage = self.usage_store.subtract(client_id, day or self._today(), 1, num_bytes)
        logger.info(
            f"Released processing budget for {client_id}: "
            f"{usage.files_processed} files, {format_file_size(usage.bytes_processed)} on {usage.day}"
        )
        return usage

    def get_budget_status(self, client_id: str) -> dict:
        """
        Detailed budget status for a tenant.

        Returns a dictionary showing current usage vs limits.
        """
        usage = self.get_usage(client_id)
        return {
            "day": usage.day.isoformat(),
            "files": {
                "used": usage.files_processed,
                "limit": self.limits.daily_file_limit,
                "remaining": max(0, self.limits.daily_file_limit - usage.files_processed),
                "percentage": round(usage.files_processed / self.limits.daily_file_limit * 100, 1),
            },
            "bytes": {
                "used": usage.bytes_processed,
                "limit": self.limits.daily_byte_limit,
                "remaining": max(0, self.limits.daily_byte_limit - usage.bytes_processed),
                "percentage": round(usage.bytes_processed / self.limits.daily_byte_limit * 100, 1),
            },
        }


# Global governor instance
_governor = None


def get_budget_governor(usage_store: Optional[UsageStore] = None) -> ProcessingBudgetGovernor:
    """Get the global budget governor instance."""
    global _governor
    if _governor is None:
        _governor = ProcessingBudgetGovernor(usage_store)
    return _governor


# CLI for testing
if __name__ == "__main__":
    import json

    governor = ProcessingBudgetGovernor()
    client_id = "test-client-123"

    print("=== Cost Estimates ===")
    for kind in ("text", "pdf", "audio", "video"):
        size = estimate_file_bytes_by_type(kind)
        print(f"{kind:>6}: {format_file_size(size):>8} -> {estimate_processing_cost(size).to_dict()}")

    print("\n=== Reserving ===")
    for i in range(12):
        check = governor.try_reserve(client_id, file_type="pdf")
        status = "ALLOWED" if check.allowed else f"DENIED - {check.reason}"
        print(f"File {i + 1}: {status}")

    print(json.dumps(governor.get_budget_status(client_id), indent=2))
