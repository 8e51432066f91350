import asyncio
import math
import random
import unittest
from decimal import Decimal

from fakes import CID_V0, GATEWAYS, FakeFetcher, FakeLedger, ManualClock, json_response

from ledger_scout.cache import TtlCacheStore
from ledger_scout.coalescer import RequestCoalescer
from ledger_scout.config.models import ScannerSettings
from ledger_scout.content.service import ContentResolutionService
from ledger_scout.discovery import ALL_RECORDS, LISTED_FOR_SALE, RecordPredicate, ScanStatus
from ledger_scout.discovery.scanner import DiscoveryScanner, ScanPhase
from ledger_scout.gateways import GatewayResolver
from ledger_scout.scheduler import BackgroundScheduler

DISCOVERY_TTL = 120
ABORTED_TTL = 30
EVEN = RecordPredicate("even", lambda record: record.index % 2 == 0)


class ScannerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.fetcher = FakeFetcher()
        self.fetcher.default = lambda url: json_response(url, {})
        self.cache = TtlCacheStore(max_age_seconds=7 * 24 * 3600, clock=self.clock)
        self.coalescer = RequestCoalescer()
        self.scheduler = BackgroundScheduler()
        self.content = ContentResolutionService(
            resolver=GatewayResolver(GATEWAYS),
            fetcher=self.fetcher,
            cache=self.cache,
            coalescer=self.coalescer,
            scheduler=self.scheduler,
            success_ttl_seconds=1800,
            failure_ttl_seconds=60,
            request_timeout_seconds=1.0,
            placeholder_image="/placeholder.webp",
        )

    async def asyncTearDown(self) -> None:
        await self.scheduler.shutdown()

    def make_scanner(self, ledger: FakeLedger, **overrides) -> DiscoveryScanner:
        settings = {
            "batch_size": 10,
            "failure_threshold": 3,
            "safety_margin": 10,
            "check_timeout_seconds": 1.0,
        }
        settings.update(overrides)
        return DiscoveryScanner(
            ledger=ledger,
            content=self.content,
            cache=self.cache,
            coalescer=self.coalescer,
            scheduler=self.scheduler,
            settings=ScannerSettings(**settings),
            record_ttl_seconds=DISCOVERY_TTL,
            discovery_ttl_seconds=DISCOVERY_TTL,
            aborted_discovery_ttl_seconds=ABORTED_TTL,
            clock=self.clock,
        )


class ScanTerminationTests(ScannerTestCase):
    async def test_even_indices_of_a_37_record_ledger(self) -> None:
        ledger = FakeLedger(37)
        scanner = self.make_scanner(ledger)

        result = await scanner.discover(EVEN)

        self.assertEqual(result.status, ScanStatus.COMPLETED)
        self.assertEqual(result.indices, list(range(2, 37, 2)))
        self.assertEqual(result.batches_scanned, 4)
        self.assertEqual(result.sentinel_index, 38)
        # Batch 4 covers 31..40; nothing past it is ever read.
        self.assertEqual(max(ledger.requested), 40)
        self.assertEqual(result.checks_issued, 40)
        self.assertEqual(scanner.phase(EVEN), ScanPhase.COMPLETED)

    async def test_sentinel_ends_scan_within_ceil_of_length_over_batch(self) -> None:
        for length in (1, 9, 10, 11, 20, 25, 37, 40):
            with self.subTest(length=length):
                self.cache.clear()
                ledger = FakeLedger(length)
                scanner = self.make_scanner(ledger)

                result = await scanner.scan(ALL_RECORDS)

                self.assertTrue(result.completed)
                self.assertLessEqual(result.batches_scanned, math.ceil(length / 10))
                self.assertEqual(result.indices, list(range(1, length + 1)))
                self.assertLessEqual(max(ledger.requested), math.ceil(length / 10) * 10)
                # A full final batch ends at the counted length, so no sentinel is read.
                expected_sentinel = None if length % 10 == 0 else length + 1
                self.assertEqual(result.sentinel_index, expected_sentinel)

    async def test_counted_end_is_not_passed_even_with_default_margin(self) -> None:
        ledger = FakeLedger(40)
        scanner = self.make_scanner(ledger, safety_margin=ScannerSettings().safety_margin)

        result = await scanner.scan(ALL_RECORDS)

        self.assertEqual(result.batches_scanned, 4)
        self.assertEqual(result.checks_issued, 40)
        self.assertEqual(max(ledger.requested), 40)

    async def test_cached_fallback_bound_still_uses_margin(self) -> None:
        ledger = FakeLedger(20)
        scanner = self.make_scanner(ledger)
        await scanner.compute_window()

        ledger.append()
        ledger.count_error = ConnectionError("count unavailable")
        result = await scanner.scan(ALL_RECORDS)

        self.assertEqual(result.end_index, 30)
        self.assertEqual(result.indices, list(range(1, 22)))
        self.assertEqual(result.sentinel_index, 22)

    async def test_unknown_count_falls_back_to_default_bound(self) -> None:
        ledger = FakeLedger(12)
        ledger.count_error = ConnectionError("count unavailable")
        scanner = self.make_scanner(ledger, default_bound=1000)

        result = await scanner.scan(ALL_RECORDS)

        self.assertEqual(result.end_index, 1010)
        self.assertEqual(result.sentinel_index, 13)
        self.assertEqual(result.batches_scanned, 2)

    async def test_window_end_stops_scan_without_sentinel(self) -> None:
        ledger = FakeLedger(30)
        ledger.count_error = ConnectionError("count unavailable")
        scanner = self.make_scanner(ledger, default_bound=15, safety_margin=0)

        result = await scanner.scan(ALL_RECORDS)

        self.assertTrue(result.completed)
        self.assertIsNone(result.sentinel_index)
        self.assertEqual(result.indices, list(range(1, 16)))
        self.assertEqual(max(ledger.requested), 15)

    async def test_safety_margin_is_capped(self) -> None:
        scanner = self.make_scanner(FakeLedger(5), safety_margin=500, max_safety_margin=20)

        window = await scanner.compute_window()

        self.assertEqual((window.start_index, window.end_index), (1, 25))

    async def test_custom_start_index(self) -> None:
        ledger = FakeLedger(5, start_index=0)
        scanner = self.make_scanner(ledger, start_index=0)

        result = await scanner.scan(ALL_RECORDS)

        self.assertEqual(result.indices, [0, 1, 2, 3, 4])
        self.assertEqual(result.sentinel_index, 5)


class CircuitBreakerTests(ScannerTestCase):
    async def test_threshold_consecutive_failures_abort_with_partial_results(self) -> None:
        ledger = FakeLedger(30, failing={5, 6, 7})
        scanner = self.make_scanner(ledger)

        with self.assertLogs("ledger_scout.discovery.scanner", level="WARNING"):
            result = await scanner.discover(ALL_RECORDS)

        self.assertEqual(result.status, ScanStatus.ABORTED)
        self.assertEqual(result.abort_reason, "circuit_breaker")
        self.assertEqual(result.indices, [1, 2, 3, 4])
        self.assertEqual(result.batches_scanned, 1)
        self.assertEqual(scanner.phase(ALL_RECORDS), ScanPhase.ABORTED)

    async def test_earlier_success_does_not_prevent_abort(self) -> None:
        ledger = FakeLedger(30, failing={2, 5, 6, 7})
        scanner = self.make_scanner(ledger)

        result = await scanner.scan(ALL_RECORDS)

        self.assertEqual(result.abort_reason, "circuit_breaker")
        self.assertEqual(result.indices, [1, 3, 4])

    async def test_scattered_failures_do_not_trip(self) -> None:
        ledger = FakeLedger(20, failing={2, 3, 5, 6, 8, 9})
        scanner = self.make_scanner(ledger)

        result = await scanner.scan(ALL_RECORDS)

        self.assertTrue(result.completed)
        self.assertEqual(result.indices, [1, 4, 7] + list(range(10, 21)))

    async def test_failure_run_spans_batches(self) -> None:
        ledger = FakeLedger(30, failing={10, 11, 12})
        scanner = self.make_scanner(ledger)

        result = await scanner.scan(ALL_RECORDS)

        self.assertEqual(result.abort_reason, "circuit_breaker")
        self.assertEqual(result.batches_scanned, 2)
        self.assertEqual(result.indices, list(range(1, 10)))

    async def test_aborted_result_is_cached_briefly(self) -> None:
        ledger = FakeLedger(30, failing={5, 6, 7})
        scanner = self.make_scanner(ledger)
        await scanner.discover(ALL_RECORDS)

        self.clock.advance(ABORTED_TTL - 1)
        cached = await scanner.discover(ALL_RECORDS)
        self.assertTrue(cached.from_cache)
        self.assertFalse(cached.stale)

        self.clock.advance(1)
        stale = await scanner.discover(ALL_RECORDS)
        self.assertTrue(stale.stale)


class OrderingTests(ScannerTestCase):
    async def test_order_is_independent_of_completion_timing(self) -> None:
        rng = random.Random(7)
        ledger = FakeLedger(45, delay_for=lambda index: rng.uniform(0, 0.005))
        scanner = self.make_scanner(ledger)

        runs = []
        for _ in range(3):
            scanner.invalidate()
            self.cache.invalidate_prefix("record:")
            runs.append((await scanner.discover(EVEN)).indices)

        expected = list(range(2, 46, 2))
        self.assertEqual(runs, [expected, expected, expected])

    async def test_predicate_error_is_treated_as_non_match(self) -> None:
        def picky(record):
            if record.index == 3:
                raise RuntimeError("bad record")
            return record.index <= 4

        scanner = self.make_scanner(FakeLedger(6))

        with self.assertLogs("ledger_scout.discovery.scanner", level="ERROR"):
            result = await scanner.scan(RecordPredicate("picky", picky))

        self.assertEqual(result.indices, [1, 2, 4])


class CancellationTests(ScannerTestCase):
    async def test_cancel_before_start(self) -> None:
        ledger = FakeLedger(10)
        scanner = self.make_scanner(ledger)
        cancel = asyncio.Event()
        cancel.set()

        result = await scanner.discover(ALL_RECORDS, cancel_event=cancel)

        self.assertEqual(result.abort_reason, "cancelled")
        self.assertEqual(result.batches_scanned, 0)
        self.assertEqual(ledger.requested, [])

    async def test_cancel_between_batches_keeps_first_batch_and_skips_cache(self) -> None:
        cancel = asyncio.Event()

        def cancel_at_five(record):
            if record.index == 5:
                cancel.set()
            return True

        ledger = FakeLedger(30)
        scanner = self.make_scanner(ledger)
        predicate = RecordPredicate("cancel-at-five", cancel_at_five)

        result = await scanner.discover(predicate, cancel_event=cancel)

        self.assertEqual(result.status, ScanStatus.ABORTED)
        self.assertEqual(result.abort_reason, "cancelled")
        self.assertEqual(result.batches_scanned, 1)
        self.assertEqual(result.indices, list(range(1, 11)))
        self.assertIsNone(self.cache.get_stale(scanner.cache_key(predicate)))

    async def test_phase_is_tracked_per_predicate(self) -> None:
        cancel = asyncio.Event()

        def cancel_at_five(record):
            if record.index == 5:
                cancel.set()
            return True

        scanner = self.make_scanner(FakeLedger(30))
        cancelling = RecordPredicate("cancel-at-five", cancel_at_five)

        cancelled, completed = await asyncio.gather(
            scanner.discover(cancelling, cancel_event=cancel),
            scanner.discover(ALL_RECORDS),
        )

        self.assertEqual(cancelled.abort_reason, "cancelled")
        self.assertTrue(completed.completed)
        self.assertEqual(scanner.phase(cancelling), ScanPhase.ABORTED)
        self.assertEqual(scanner.phase(ALL_RECORDS), ScanPhase.COMPLETED)
        self.assertEqual(scanner.phase(LISTED_FOR_SALE), ScanPhase.IDLE)


class DiscoveryCacheTests(ScannerTestCase):
    async def test_fresh_result_is_served_from_cache(self) -> None:
        ledger = FakeLedger(15)
        scanner = self.make_scanner(ledger)

        first = await scanner.discover(LISTED_FOR_SALE)
        reads = len(ledger.requested)
        second = await scanner.discover(LISTED_FOR_SALE)

        self.assertFalse(first.from_cache)
        self.assertTrue(second.from_cache)
        self.assertEqual(second.indices, first.indices)
        self.assertEqual(len(ledger.requested), reads)

    async def test_concurrent_discovers_share_one_scan(self) -> None:
        ledger = FakeLedger(15)
        scanner = self.make_scanner(ledger)

        a, b = await asyncio.gather(scanner.discover(ALL_RECORDS), scanner.discover(ALL_RECORDS))

        self.assertEqual(ledger.count_calls, 1)
        self.assertEqual(a.indices, b.indices)

    async def test_stale_result_triggers_one_background_rescan(self) -> None:
        ledger = FakeLedger(15)
        scanner = self.make_scanner(ledger)
        await scanner.discover(ALL_RECORDS)

        self.clock.advance(DISCOVERY_TTL + 1)
        ledger.append()
        stale_a, stale_b = await asyncio.gather(scanner.discover(ALL_RECORDS), scanner.discover(ALL_RECORDS))

        self.assertTrue(stale_a.stale and stale_b.stale)
        self.assertEqual(stale_a.total_items, 15)

        await self.scheduler.drain()

        self.assertEqual(ledger.count_calls, 2)
        refreshed = await scanner.discover(ALL_RECORDS)
        self.assertFalse(refreshed.stale)
        self.assertEqual(refreshed.total_items, 16)

    async def test_force_refresh_rescans(self) -> None:
        ledger = FakeLedger(5)
        scanner = self.make_scanner(ledger)
        await scanner.discover(ALL_RECORDS)

        ledger.append()
        result = await scanner.discover(ALL_RECORDS, force_refresh=True)

        self.assertFalse(result.from_cache)
        self.assertEqual(result.indices, [1, 2, 3, 4, 5, 6])

    async def test_invalidate_record_drops_record_and_discovery_entries(self) -> None:
        ledger = FakeLedger(5, listed=lambda index: index != 3)
        scanner = self.make_scanner(ledger)
        self.assertEqual((await scanner.discover(LISTED_FOR_SALE)).indices, [1, 2, 4, 5])

        ledger.records[3] = ledger.records[3].model_copy(update={"listed": True})
        removed = scanner.invalidate_record(3)

        self.assertEqual(removed, 2)
        self.assertEqual((await scanner.discover(LISTED_FOR_SALE)).indices, [1, 2, 3, 4, 5])

    async def test_predicates_are_cached_separately(self) -> None:
        ledger = FakeLedger(6, listed=lambda index: index % 3 == 0)
        scanner = self.make_scanner(ledger)

        listed = await scanner.discover(LISTED_FOR_SALE)
        everything = await scanner.discover(ALL_RECORDS)

        self.assertEqual(listed.indices, [3, 6])
        self.assertEqual(everything.indices, [1, 2, 3, 4, 5, 6])
        self.assertFalse(everything.from_cache)


class MetadataAndStatsTests(ScannerTestCase):
    async def test_matches_carry_normalized_metadata(self) -> None:
        url = GATEWAYS[0].replace("{cid}", f"{CID_V0}/2.json")
        self.fetcher.serve_json(url, {"name": "Two", "image": "https://cdn.test/2.png"})
        self.fetcher.default = None
        scanner = self.make_scanner(FakeLedger(3))

        result = await scanner.discover(ALL_RECORDS)

        by_index = {item.index: item.metadata for item in result.records}
        self.assertEqual(by_index[2].name, "Two")
        self.assertEqual(by_index[2].image, "https://cdn.test/2.png")
        self.assertEqual(by_index[1].name, "NFT #1")
        self.assertTrue(by_index[1].error)
        self.assertEqual(by_index[1].image, "/placeholder.webp")

    async def test_statistics_are_derived_from_records(self) -> None:
        scanner = self.make_scanner(FakeLedger(5))

        result = await scanner.discover(ALL_RECORDS)

        self.assertEqual(result.total_items, 5)
        self.assertEqual(result.total_volume, Decimal("1.5"))
        self.assertEqual(result.floor_price, Decimal("0.1"))
        self.assertEqual(result.ceiling_price, Decimal("0.5"))
        self.assertEqual(result.unique_owners, 3)


if __name__ == "__main__":
    unittest.main()
