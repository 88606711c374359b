from __future__ import annotations

import math

import pytest

from scapebot.constants import BOSSES, SKILLS
from scapebot.errors import InvalidDiff, NegativeDiff, SilentRegression, SubsetViolation
from scapebot.services.diff import compute_diff, find_regressions, get_default, patch_missing, resolve_value


def test_only_changed_keys_are_reported() -> None:
    before = {"attack": 50, "defence": 40}
    after = {"attack": 52, "defence": 40}
    assert compute_diff(before, after, 1) == {"attack": 2}


def test_equal_snapshots_produce_empty_diff() -> None:
    values = {"attack": 50, "magic": 99}
    assert compute_diff(values, dict(values), 1) == {}


def test_new_keys_are_measured_from_the_baseline() -> None:
    assert compute_diff({}, {"Zulrah": 3}, get_default(BOSSES)) == {"Zulrah": 3}
    assert compute_diff({}, {"attack": 10}, get_default(SKILLS)) == {"attack": 9}


def test_new_key_at_baseline_is_not_a_change() -> None:
    assert compute_diff({}, {"attack": 1}, 1) == {}


def test_dropped_keys_violate_the_subset_contract() -> None:
    with pytest.raises(SubsetViolation) as exc:
        compute_diff({"attack": 50, "magic": 80}, {"attack": 50}, 1)
    assert exc.value.missing_keys == ["magic"]


def test_decrease_is_a_negative_diff() -> None:
    with pytest.raises(NegativeDiff) as exc:
        compute_diff({"Zulrah": 10}, {"Zulrah": 9}, 0)
    assert exc.value.key == "Zulrah"
    assert exc.value.before == 10
    assert exc.value.after == 9


def test_drop_to_sentinel_is_a_silent_regression() -> None:
    with pytest.raises(SilentRegression) as exc:
        compute_diff({"attack": 50}, {"attack": 1}, 1)
    assert exc.value.key == "attack"
    assert str(exc.value) == ""


@pytest.mark.parametrize("bad", ["52", None, math.nan, math.inf, True])
def test_non_numeric_or_non_finite_values_are_invalid(bad) -> None:
    with pytest.raises(InvalidDiff):
        compute_diff({"attack": 50}, {"attack": bad}, 1)


def test_patch_missing_keeps_trusted_values_for_omitted_keys() -> None:
    trusted = {"Zulrah": 10, "Vorkath": 5}
    raw = {"Zulrah": 12}
    patched = patch_missing(trusted, raw)
    assert patched == {"Zulrah": 12, "Vorkath": 5}
    assert compute_diff(trusted, patched, 0) == {"Zulrah": 2}
    assert trusted == {"Zulrah": 10, "Vorkath": 5}


def test_resolve_value_falls_back_to_category_baseline() -> None:
    assert resolve_value({}, "attack", SKILLS) == 1
    assert resolve_value({}, "Zulrah", BOSSES) == 0
    assert resolve_value({"attack": 40}, "attack", SKILLS) == 40


def test_find_regressions() -> None:
    trusted = {"attack": 50, "magic": 80, "mining": 30}
    raw = {"attack": 49, "magic": 81, "cooking": 5}
    assert find_regressions(trusted, raw) == {"attack": (50, 49)}
