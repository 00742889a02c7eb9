from __future__ import annotations

import pytest

from common.dedup import DedupWindow


def test_same_id_admitted_once():
    w = DedupWindow(capacity=3)

    assert w.admit("m1") is True
    assert w.admit("m1") is False
    assert len(w) == 1


def test_oldest_evicted_after_capacity_exceeded():
    w = DedupWindow(capacity=3)
    for mid in ("a", "b", "c", "d"):
        assert w.admit(mid)

    assert len(w) == 3
    assert "a" not in w
    # Evicted id is treated as new again
    assert w.admit("a") is True
    assert "b" not in w


def test_eviction_is_fifo_not_lru():
    w = DedupWindow(capacity=2)
    w.admit("a")
    w.admit("b")
    # Re-seeing "a" must not refresh it
    assert w.admit("a") is False
    w.admit("c")

    assert "a" not in w
    assert "b" in w
    assert "c" in w


def test_default_capacity_window():
    w = DedupWindow(capacity=500)
    for i in range(501):
        w.admit(f"id-{i}")

    assert len(w) == 500
    assert "id-0" not in w
    assert "id-1" in w


def test_invalid_capacity():
    with pytest.raises(ValueError):
        DedupWindow(capacity=0)
