"""
Concurrent number allocation against a real Postgres database.

Runs only when DJANGO_USE_POSTGRES_TEST=1 and the default connection is
Postgres; SQLite cannot exercise row locks across threads. The default test
run covers distinct, gap-free numbering sequentially in
tests.SequenceAllocatorTests and the counter-creation retry path with a
mocked IntegrityError.
"""
import os
import threading
import unittest
from datetime import date

from django.db import connection, transaction
from django.test import TransactionTestCase

from purchasing import rules
from purchasing.models import SequenceCounter
from purchasing.services.sequences import allocate_number


@unittest.skipUnless(
    os.getenv("DJANGO_USE_POSTGRES_TEST") == "1",
    "Postgres integration test disabled (set DJANGO_USE_POSTGRES_TEST=1).",
)
class ConcurrentSequenceAllocationTest(TransactionTestCase):
    def test_parallel_allocations_are_distinct_and_gap_free(self) -> None:
        if connection.vendor != "postgresql":
            self.skipTest("Concurrent allocation test requires Postgres (set DB_ENGINE=postgres).")

        workers = 50
        on_date = date(2024, 3, 5)
        barrier = threading.Barrier(workers)
        numbers: list[str] = []
        failures: list[Exception] = []
        lock = threading.Lock()

        def allocate() -> None:
            try:
                barrier.wait()
                with transaction.atomic():
                    number = allocate_number(1, "ACME", rules.PREFIX_PURCHASE_ORDER, on_date)
                with lock:
                    numbers.append(number)
            except Exception as exc:
                with lock:
                    failures.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=allocate) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(failures, [])
        self.assertEqual(len(set(numbers)), workers)
        self.assertEqual(
            sorted(int(number.rsplit("-", 1)[1]) for number in numbers),
            list(range(1, workers + 1)),
        )
        self.assertEqual(SequenceCounter.objects.get(prefix="PO").last_value, workers)
