"""Tests for FixedWindow and SlidingWindow: boundaries, eviction, out-of-order adds."""

from guard.windows import FixedWindow, SlidingWindow, resets_in

T0 = 1_700_006_400.0  # aligned to a day boundary


class TestFixedWindow:
    def test_counts_within_window(self):
        w = FixedWindow(60)
        for i in range(5):
            w.add(T0 + i)
        assert w.current(T0 + 59.9) == 5

    def test_resets_at_boundary(self):
        w = FixedWindow(60)
        w.add(T0 + 10)
        w.add(T0 + 59)
        assert w.current(T0 + 60) == 0
        assert w.add(T0 + 60) == 1

    def test_late_request_does_not_rewind(self):
        w = FixedWindow(60)
        w.add(T0 + 61)
        # A straggler from the previous minute counts into the current one.
        assert w.add(T0 + 59) == 2
        assert w.start == T0 + 60

    def test_resets_in(self):
        assert resets_in(60, T0 + 15) == 45.0
        assert resets_in(3600, T0) == 3600.0


class TestSlidingWindow:
    def test_items_within_window_kept(self):
        w = SlidingWindow(60)
        w.add(T0, "a")
        w.add(T0 + 30, "b")
        assert w.items(T0 + 59) == ["a", "b"]

    def test_item_exactly_at_boundary_kept(self):
        w = SlidingWindow(60)
        w.add(T0, "boundary")
        assert w.items(T0 + 60) == ["boundary"]

    def test_item_past_boundary_evicted(self):
        w = SlidingWindow(60)
        w.add(T0, "old")
        assert w.items(T0 + 60.001) == []
        assert len(w) == 0

    def test_narrower_view(self):
        w = SlidingWindow(60)
        for i in range(10):
            w.add(T0 + i)
        assert w.count(T0 + 9) == 10
        assert w.count(T0 + 9, max_age=1) == 2

    def test_narrow_view_never_wider_than_window(self):
        w = SlidingWindow(10)
        w.add(T0)
        w.add(T0 + 5)
        assert w.count(T0 + 5, max_age=3600) == 2

    def test_add_rejects_items_already_outside(self):
        w = SlidingWindow(10)
        w.add(T0 + 100)
        assert w.add(T0) is False
        assert w.count(T0 + 100) == 1

    def test_out_of_order_within_window_accepted(self):
        w = SlidingWindow(10)
        w.add(T0 + 5)
        assert w.add(T0 + 3) is True
        assert w.count(T0 + 5) == 2

    def test_future_items_excluded_from_past_view(self):
        w = SlidingWindow(60)
        w.add(T0 + 10, "later")
        assert w.items(T0) == []

    def test_maxlen_bounds_memory(self):
        w = SlidingWindow(60, maxlen=3)
        for i in range(5):
            w.add(T0 + i, i)
        assert w.items(T0 + 5) == [2, 3, 4]

    def test_clear(self):
        w = SlidingWindow(60)
        w.add(T0)
        w.clear()
        assert w.count(T0) == 0
