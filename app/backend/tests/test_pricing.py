import pytest

from pricing import apply_markup, build_price_index, round_half_up


def test_apply_markup_rounds_half_up():
    # 5.0 * 1.255 == 6.275 exactly; binary floats would round this down.
    assert apply_markup(5.0, 25.5) == 6.28
    assert apply_markup(4, 25.5) == 5.02
    assert apply_markup(-1.0, 25.5) == -1.26


def test_apply_markup_rejects_non_numeric_values():
    with pytest.raises(ValueError):
        apply_markup("5.0", 25.5)
    with pytest.raises(ValueError):
        apply_markup(float("nan"), 25.5)


def test_small_markups_are_applied_as_percentages():
    assert apply_markup(10.0, 2) == 10.2
    assert apply_markup(10.0, 1) == 10.1
    assert apply_markup(10.0, 0.5) == 10.05
    assert apply_markup(10.0, 0) == 10.0
    assert apply_markup(10.0, -10) == 9.0

    index = build_price_index([{"utcTimestamp": "2024-01-01T00:00:00Z", "value": 10.0}], 2.0)
    assert index.lookup("2024-01-01T00:00:00Z") == 10.2


def test_non_numeric_markup_is_rejected():
    with pytest.raises(ValueError):
        build_price_index([{"utcTimestamp": "2024-01-01T00:00:00Z", "value": 10.0}], "25.5")


def test_round_half_up():
    assert round_half_up(0.125, 2) == 0.13
    assert round_half_up(2.675, 2) == 2.68
    assert round_half_up(-0.0000005, 6) == -0.000001


def test_build_price_index_normalizes_keys_and_applies_markup():
    index = build_price_index(
        [
            {"utcTimestamp": "2024-03-31T00:30:00Z", "value": 5.0},
            {"timeStamp": "2024-03-31T01:30:00", "value": 2.0},
        ],
        25.5,
    )

    assert len(index) == 2
    assert index.lookup("2024-03-31T00:30:00Z") == 6.28
    assert index.lookup("2024-03-31T01:30:00Z") == 2.51
    assert index.lookup("2024-03-31T02:30:00Z") is None
    assert index.keys() == ["2024-03-31T00:30:00Z", "2024-03-31T01:30:00Z"]


def test_build_price_index_skips_and_counts_bad_entries():
    index = build_price_index(
        [
            {"utcTimestamp": "garbage", "value": 1.0},
            {"utcTimestamp": "", "value": 1.0},
            {"utcTimestamp": "2024-01-01T00:00:00Z", "value": None},
            {"utcTimestamp": "2024-01-01T01:00:00Z", "value": 3.0},
        ],
        25.5,
    )

    assert len(index) == 1
    assert index.stats.invalid_timestamps == 2
    assert index.stats.invalid_values == 1
    assert index.stats.entries == 1


def test_build_price_index_last_duplicate_wins():
    index = build_price_index(
        [
            {"utcTimestamp": "2024-01-01T00:00:00Z", "value": 1.0},
            {"utcTimestamp": "2024-01-01T02:00:00+02:00", "value": 2.0},
        ],
        0,
    )

    assert len(index) == 1
    assert index.lookup("2024-01-01T00:00:00Z") == 2.0
    assert index.stats.duplicates == 1


def test_build_price_index_handles_empty_input():
    index = build_price_index(None, 25.5)
    assert len(index) == 0
    assert index.stats.entries == 0
