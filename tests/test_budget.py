"""
Tests for execution/clarity_rag/budget.py

Covers: size helpers and cost estimates, InMemoryUsageStore,
        PostgresUsageStore SQL, ProcessingBudgetGovernor (check_budget,
        check_file, reserve, try_reserve, release, day rollover, budget
        status) and the get_budget_governor singleton.
"""

import threading
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

MIB = 1024 * 1024


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestFormatFileSize:
    """Tests for format_file_size()."""

    @pytest.mark.parametrize("num_bytes,expected", [
        (0, "0 B"),
        (512, "512 B"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (250 * MIB, "250 MB"),
        (3 * 1024 ** 3, "3 GB"),
    ])
    def test_formatting(self, num_bytes, expected):
        from execution.clarity_rag.budget import format_file_size
        assert format_file_size(num_bytes) == expected


class TestSizeResolution:
    """Tests for normalize_bytes, estimate_file_bytes_by_type and resolve_file_bytes."""

    @pytest.mark.parametrize("value", [None, 0, -5, float("nan"), float("inf"), "abc"])
    def test_unusable_sizes(self, value):
        from execution.clarity_rag.budget import normalize_bytes
        assert normalize_bytes(value) is None

    def test_usable_size_floored(self):
        from execution.clarity_rag.budget import normalize_bytes
        assert normalize_bytes(1234.9) == 1234

    def test_type_estimates(self):
        from execution.clarity_rag.budget import estimate_file_bytes_by_type
        assert estimate_file_bytes_by_type("pdf") == 6 * MIB
        assert estimate_file_bytes_by_type("VIDEO") == 25 * MIB
        assert estimate_file_bytes_by_type("text") == 512 * 1024

    def test_unknown_type_uses_default(self):
        from execution.clarity_rag.budget import estimate_file_bytes_by_type
        assert estimate_file_bytes_by_type("hologram") == 5 * MIB
        assert estimate_file_bytes_by_type(None) == 5 * MIB

    def test_known_size_wins_over_type(self):
        from execution.clarity_rag.budget import resolve_file_bytes
        assert resolve_file_bytes(1000, "video") == 1000
        assert resolve_file_bytes(None, "video") == 25 * MIB


class TestEstimateProcessingCost:
    """Tests for estimate_processing_cost()."""

    def test_small_file_uses_minimum_chars(self):
        from execution.clarity_rag.budget import estimate_processing_cost
        estimate = estimate_processing_cost(100)
        assert estimate.extracted_chars == 2000
        assert estimate.embedding_chunks == 1

    def test_mid_size_file(self):
        from execution.clarity_rag.budget import estimate_processing_cost
        estimate = estimate_processing_cost(1000)
        assert estimate.extracted_chars == 2500
        assert estimate.embedding_chunks == 1
        assert estimate.total_tokens == 625 + 300 + 625

    def test_unknown_size_uses_default_and_caps(self):
        from execution.clarity_rag.budget import estimate_processing_cost
        estimate = estimate_processing_cost(None)
        assert estimate.extracted_chars == 50000
        assert estimate.embedding_chunks == 11
        assert estimate.total_tokens == 12500 + 300 + 12500


# ---------------------------------------------------------------------------
# Usage stores
# ---------------------------------------------------------------------------

class TestInMemoryUsageStore:
    """Tests for InMemoryUsageStore."""

    def test_unknown_key_is_zero(self):
        from execution.clarity_rag.budget import InMemoryUsageStore
        usage = InMemoryUsageStore().get("c1", date(2024, 3, 1))
        assert usage.files_processed == 0
        assert usage.bytes_processed == 0

    def test_add_accumulates(self):
        from execution.clarity_rag.budget import InMemoryUsageStore
        store = InMemoryUsageStore()
        day = date(2024, 3, 1)
        store.add("c1", day, 1, 100)
        usage = store.add("c1", day, 2, 50)
        assert (usage.files_processed, usage.bytes_processed) == (3, 150)

    def test_keys_are_isolated(self):
        from execution.clarity_rag.budget import InMemoryUsageStore
        store = InMemoryUsageStore()
        day = date(2024, 3, 1)
        store.add("c1", day, 1, 100)
        assert store.get("c2", day).files_processed == 0
        assert store.get("c1", day + timedelta(days=1)).files_processed == 0

    def test_add_if_within_rejects_overflow(self):
        from execution.clarity_rag.budget import InMemoryUsageStore, BudgetLimits
        store = InMemoryUsageStore()
        day = date(2024, 3, 1)
        limits = BudgetLimits(daily_file_limit=2, daily_byte_limit=1000)

        assert store.add_if_within("c1", day, 1, 600, limits) is not None
        assert store.add_if_within("c1", day, 1, 600, limits) is None
        assert store.get("c1", day).bytes_processed == 600

    def test_subtract_never_goes_negative(self):
        from execution.clarity_rag.budget import InMemoryUsageStore
        store = InMemoryUsageStore()
        day = date(2024, 3, 1)
        store.add("c1", day, 1, 100)

        usage = store.subtract("c1", day, 2, 500)

        assert (usage.files_processed, usage.bytes_processed) == (0, 0)
        assert store.subtract("other", day, 1, 1).files_processed == 0

    def test_returned_usage_is_a_copy(self):
        from execution.clarity_rag.budget import InMemoryUsageStore
        store = InMemoryUsageStore()
        day = date(2024, 3, 1)
        usage = store.add("c1", day, 1, 100)
        usage.files_processed = 99
        assert store.get("c1", day).files_processed == 1


class TestPostgresUsageStore:
    """Tests for PostgresUsageStore against a mock connection."""

    def _store(self):
        from execution.clarity_rag.budget import PostgresUsageStore
        document_store = MagicMock()
        conn = document_store.get_connection.return_value.__enter__.return_value
        cursor = conn.cursor.return_value.__enter__.return_value
        return PostgresUsageStore(document_store), conn, cursor

    def test_get_missing_row(self):
        store, _, cursor = self._store()
        cursor.fetchone.return_value = None
        usage = store.get("c1", date(2024, 3, 1))
        assert usage.files_processed == 0

    def test_get_existing_row(self):
        store, _, cursor = self._store()
        cursor.fetchone.return_value = {"files_processed": 4, "bytes_processed": 2048}
        usage = store.get("c1", date(2024, 3, 1))
        assert (usage.files_processed, usage.bytes_processed) == (4, 2048)

    def test_add_if_within_passes_limits(self):
        from execution.clarity_rag.budget import BudgetLimits
        store, conn, cursor = self._store()
        cursor.fetchone.return_value = {"files_processed": 1, "bytes_processed": 500}

        usage = store.add_if_within("c1", date(2024, 3, 1), 1, 500, BudgetLimits())

        sql, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (client_id, day)" in sql
        assert params[-2:] == (10, 250 * MIB)
        assert usage.bytes_processed == 500
        conn.commit.assert_called_once()

    def test_add_if_within_rejected(self):
        from execution.clarity_rag.budget import BudgetLimits
        store, _, cursor = self._store()
        cursor.fetchone.return_value = None
        assert store.add_if_within("c1", date(2024, 3, 1), 1, 500, BudgetLimits()) is None

    def test_add_rolls_back_on_error(self):
        store, conn, cursor = self._store()
        cursor.execute.side_effect = RuntimeError("deadlock")
        with pytest.raises(RuntimeError):
            store.add("c1", date(2024, 3, 1), 1, 10)
        conn.rollback.assert_called_once()

    def test_subtract_clamps_at_zero(self):
        store, conn, cursor = self._store()
        cursor.fetchone.return_value = {"files_processed": 0, "bytes_processed": 0}

        usage = store.subtract("c1", date(2024, 3, 1), 1, 500)

        sql, params = cursor.execute.call_args[0]
        assert "GREATEST(0" in sql
        assert params == (1, 500, "c1", date(2024, 3, 1))
        assert usage.files_processed == 0
        conn.commit.assert_called_once()


# ---------------------------------------------------------------------------
# Governor
# ---------------------------------------------------------------------------

class TestCheckBudget:
    """Tests for ProcessingBudgetGovernor.check_budget()."""

    def test_eleven_files_rejected(self, governor):
        check = governor.check_budget("c1", file_count=11, total_bytes=0)
        assert check.allowed is False
        assert "10/day" in check.reason

    def test_fresh_day_allows_within_limits(self, governor):
        check = governor.check_budget("c1", file_count=3, total_bytes=10 * MIB)
        assert check.allowed is True
        assert check.reason is None
        assert check.remaining_files == 10
        assert check.remaining_bytes == 250 * MIB

    def test_byte_limit_reason(self, governor):
        check = governor.check_budget("c1", file_count=1, total_bytes=251 * MIB)
        assert check.allowed is False
        assert check.reason == "Daily data limit reached (250 MB/day)."

    def test_exact_limits_allowed(self, governor):
        assert governor.check_budget("c1", 10, 250 * MIB).allowed is True

    def test_check_is_non_mutating(self, governor):
        for _ in range(5):
            governor.check_budget("c1", file_count=2, total_bytes=MIB)
        usage = governor.get_usage("c1")
        assert usage.files_processed == 0
        assert usage.bytes_processed == 0

    @pytest.mark.parametrize("bad", [-3, float("nan"), None, "x"])
    def test_invalid_counts_treated_as_zero(self, governor, bad):
        assert governor.check_budget("c1", bad, bad).allowed is True

    def test_fractional_counts_floored(self, governor):
        assert governor.check_budget("c1", 10.9, 0).allowed is True


class TestReserve:
    """Tests for reserve() and try_reserve()."""

    def test_reserve_updates_usage(self, governor):
        usage = governor.reserve("c1", file_size_bytes=1000)
        assert usage.files_processed == 1
        assert usage.bytes_processed == 1000
        assert governor.get_usage("c1").files_processed == 1

    def test_reserve_estimates_unknown_size(self, governor):
        usage = governor.reserve("c1", file_type="audio")
        assert usage.bytes_processed == 12 * MIB

    def test_second_file_over_byte_cap_rejected_by_check(self, governor):
        first = 200 * MIB
        second = 100 * MIB
        assert governor.check_budget("c1", 1, first).allowed
        governor.reserve("c1", file_size_bytes=first)

        check = governor.check_budget("c1", 1, second)

        assert check.allowed is False
        assert check.remaining_bytes == 50 * MIB

    def test_try_reserve_allows_and_records(self, governor):
        check = governor.try_reserve("c1", file_size_bytes=MIB)
        assert check.allowed is True
        assert check.usage.files_processed == 1
        assert check.remaining_files == 9
        assert check.remaining_bytes == 249 * MIB

    def test_try_reserve_rejects_eleventh_file(self, governor):
        for _ in range(10):
            assert governor.try_reserve("c1", file_size_bytes=1).allowed
        check = governor.try_reserve("c1", file_size_bytes=1)
        assert check.allowed is False
        assert "10/day" in check.reason
        assert governor.get_usage("c1").files_processed == 10

    def test_try_reserve_race_reason(self, clock):
        from execution.clarity_rag.budget import ProcessingBudgetGovernor, InMemoryUsageStore
        store = InMemoryUsageStore()
        store.add_if_within = MagicMock(return_value=None)
        governor = ProcessingBudgetGovernor(store, today=clock)

        check = governor.try_reserve("c1", file_size_bytes=1)

        assert check.allowed is False
        assert check.reason == "Daily processing budget exhausted."

    def test_concurrent_try_reserve_never_overshoots(self, governor):
        results = []
        lock = threading.Lock()

        def worker():
            check = governor.try_reserve("c1", file_size_bytes=1)
            with lock:
                results.append(check.allowed)

        threads = [threading.Thread(target=worker) for _ in range(25)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10
        assert governor.get_usage("c1").files_processed == 10

    def test_tenants_have_separate_budgets(self, governor):
        for _ in range(10):
            governor.reserve("c1", file_size_bytes=1)
        assert governor.check_budget("c1", 1, 0).allowed is False
        assert governor.check_budget("c2", 1, 0).allowed is True


class TestRelease:
    """Tests for release()."""

    def test_release_returns_reserved_file(self, governor):
        governor.try_reserve("c1", file_size_bytes=4096)
        governor.try_reserve("c1", file_size_bytes=1000)

        usage = governor.release("c1", file_size_bytes=1000)

        assert usage.files_processed == 1
        assert usage.bytes_processed == 4096

    def test_release_frees_budget_for_another_file(self, clock):
        from execution.clarity_rag.budget import ProcessingBudgetGovernor, BudgetLimits
        governor = ProcessingBudgetGovernor(limits=BudgetLimits(daily_file_limit=1), today=clock)
        assert governor.try_reserve("c1", file_size_bytes=10).allowed
        assert not governor.try_reserve("c1", file_size_bytes=10).allowed

        governor.release("c1", file_size_bytes=10)

        assert governor.try_reserve("c1", file_size_bytes=10).allowed

    def test_release_targets_reservation_day(self, governor, clock):
        governor.try_reserve("c1", file_size_bytes=10)
        reserved_day = clock.day
        clock.day = date(2024, 3, 2)
        governor.try_reserve("c1", file_size_bytes=10)

        governor.release("c1", file_size_bytes=10, day=reserved_day)

        assert governor.get_usage("c1").files_processed == 1
        assert governor.usage_store.get("c1", reserved_day).files_processed == 0


class TestDayRollover:
    """Usage from an earlier day never counts toward today."""

    def test_new_day_resets_budget(self, governor, clock):
        for _ in range(10):
            governor.reserve("c1", file_size_bytes=1)
        assert governor.check_budget("c1", 1, 0).allowed is False

        clock.day = clock.day + timedelta(days=1)

        check = governor.check_budget("c1", 1, 0)
        assert check.allowed is True
        assert check.usage.day == clock.day
        assert check.remaining_files == 10


class TestBudgetStatus:
    """Tests for get_budget_status() and check_file()."""

    def test_status(self, governor):
        governor.reserve("c1", file_size_bytes=25 * MIB)
        status = governor.get_budget_status("c1")
        assert status["day"] == "2024-03-01"
        assert status["files"]["used"] == 1
        assert status["files"]["remaining"] == 9
        assert status["bytes"]["percentage"] == 10.0

    def test_check_file_uses_type_estimate(self, governor):
        from execution.clarity_rag.budget import BudgetLimits, ProcessingBudgetGovernor
        small = ProcessingBudgetGovernor(limits=BudgetLimits(daily_byte_limit=10 * MIB))
        assert small.check_file("c1", file_type="text").allowed is True
        assert small.check_file("c1", file_type="video").allowed is False

    def test_check_to_dict(self, governor):
        payload = governor.check_budget("c1", 1, 0).to_dict()
        assert set(payload.keys()) == {"allowed", "reason", "remaining_files", "remaining_bytes", "usage"}


class TestGetBudgetGovernor:
    """Tests for the get_budget_governor singleton."""

    def test_returns_same_instance(self):
        from execution.clarity_rag.budget import get_budget_governor
        assert get_budget_governor() is get_budget_governor()

    def test_defaults(self):
        from execution.clarity_rag.budget import get_budget_governor, InMemoryUsageStore
        governor = get_budget_governor()
        assert isinstance(governor.usage_store, InMemoryUsageStore)
        assert governor.limits.daily_file_limit == 10
        assert governor.limits.daily_byte_limit == 250 * MIB
