from concurrent.futures import ThreadPoolExecutor

from quotawatch.dedup import EventDeduplicator


class TestEventDeduplicator:
    def test_first_call_returns_true(self) -> "None":
        dedup = EventDeduplicator()
        assert dedup.is_new("msg_1", "req_1") is True

    def test_second_call_same_key_returns_false(self) -> "None":
        dedup = EventDeduplicator()
        dedup.is_new("msg_1", "req_1")
        assert dedup.is_new("msg_1", "req_1") is False
        assert len(dedup) == 1

    def test_different_requests_are_independent(self) -> "None":
        dedup = EventDeduplicator()
        assert dedup.is_new("msg_1", "req_1") is True
        assert dedup.is_new("msg_1", "req_2") is True
        assert len(dedup) == 2

    def test_events_without_ids_are_always_new(self) -> "None":
        dedup = EventDeduplicator()
        assert dedup.is_new("", "") is True
        assert dedup.is_new("", "") is True
        assert len(dedup) == 0

    def test_partial_ids_still_deduplicate(self) -> "None":
        dedup = EventDeduplicator()
        assert dedup.is_new("msg_1", "") is True
        assert dedup.is_new("msg_1", "") is False

    def test_concurrent_callers_see_each_key_once(self) -> "None":
        dedup = EventDeduplicator()

        def worker(_: "int") -> "int":
            return sum(dedup.is_new(f"msg_{n}", "req") for n in range(100))

        with ThreadPoolExecutor(max_workers=8) as pool:
            total = sum(pool.map(worker, range(8)))

        assert total == 100
