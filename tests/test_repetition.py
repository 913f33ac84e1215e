"""Tests for the repetition tracker (setting memory)."""

from promptforge.repetition import RepetitionTracker


def test_record_keeps_order_and_repeats():
    """Test that settings are appended in order without de-duplication."""
    tracker = RepetitionTracker()
    tracker.record(['kitchen', 'beach'])
    tracker.record(['kitchen'])

    assert tracker.snapshot() == ['kitchen', 'beach', 'kitchen']
    assert len(tracker) == 3


def test_record_skips_blank_and_non_string():
    """Test that empty and non-string entries are ignored."""
    tracker = RepetitionTracker()
    tracker.record(['', '   ', None, 42, ' rooftop bar '])

    assert tracker.snapshot() == ['rooftop bar']


def test_window_trailing_slice():
    """Test that the window returns the most recent entries, oldest first."""
    tracker = RepetitionTracker(f'setting {i}' for i in range(30))

    window = tracker.window(max_items=25, max_chars_per_item=80)

    assert len(window) == 25
    assert window[0] == 'setting 5'
    assert window[-1] == 'setting 29'


def test_window_truncates_each_entry():
    """Test per-item truncation."""
    tracker = RepetitionTracker(['x' * 200, 'short'])

    assert tracker.window(max_items=25, max_chars_per_item=80) == ['x' * 80, 'short']


def test_window_zero_limits():
    """Test that zero limits produce an empty window."""
    tracker = RepetitionTracker(['a', 'b'])

    assert tracker.window(0, 80) == []
    assert tracker.window(25, 0) == []


def test_window_smaller_than_limit():
    """Test that a short memory is returned whole."""
    tracker = RepetitionTracker(['a', 'b'])
    assert tracker.window(25, 80) == ['a', 'b']


def test_snapshot_is_a_copy():
    """Test that mutating a snapshot leaves the tracker untouched."""
    tracker = RepetitionTracker(['a'])
    snap = tracker.snapshot()
    snap.append('b')

    assert tracker.snapshot() == ['a']


def test_reset():
    """Test clearing the memory."""
    tracker = RepetitionTracker(['a', 'b'])
    tracker.reset()

    assert len(tracker) == 0
    assert tracker.window(25, 80) == []
