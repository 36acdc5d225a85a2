import json

import pytest

from qualitygate.baseline import compare, load_baseline, save_baseline
from qualitygate.exceptions import ConfigurationError


def test_missing_baseline(tmp_path):
    assert load_baseline(str(tmp_path / "coverage.json")) is None


def test_save_creates_directory(tmp_path):
    path = tmp_path / ".qualitygate" / "coverage.json"
    save_baseline(str(path), 87.5)
    data = json.loads(path.read_text())
    assert data["coverage"] == 87.5
    assert "recorded_at" in data
    assert load_baseline(str(path)) == 87.5


def test_corrupt_baseline(tmp_path):
    path = tmp_path / "coverage.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_baseline(str(path))


def test_baseline_without_number(tmp_path):
    path = tmp_path / "coverage.json"
    path.write_text(json.dumps({"coverage": "high"}))
    with pytest.raises(ConfigurationError):
        load_baseline(str(path))


class TestCompare:
    def test_drop_is_regression(self):
        check = compare(90.0, 88.0)
        assert check.regressed is True
        assert check.delta == -2.0
        assert check.describe() == "Coverage: 88% (baseline 90%, -2) (REGRESSED)"

    def test_increase(self):
        check = compare(88.0, 90.0)
        assert check.regressed is False
        assert check.describe() == "Coverage: 90% (baseline 88%, +2)"

    def test_within_tolerance(self):
        assert compare(90.0, 89.6, tolerance=0.5).regressed is False
        assert compare(90.0, 89.4, tolerance=0.5).regressed is True

    def test_no_baseline_yet(self):
        check = compare(None, 75.0)
        assert check.regressed is False
        assert check.delta is None
        assert check.describe() == "Coverage: 75% (no baseline yet)"

    def test_no_current_value(self):
        check = compare(80.0, None)
        assert check.regressed is False
        assert check.describe() == "Coverage: not reported"

    def test_negative_tolerance(self):
        with pytest.raises(ValueError):
            compare(80.0, 80.0, tolerance=-1)
