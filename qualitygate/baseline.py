"""Coverage baseline persisted between runs, so coverage can't silently drop."""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

from qualitygate.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BASELINE_PATH = ".qualitygate/coverage.json"


@dataclass(frozen=True)
class CoverageCheck:
    baseline: float | None
    current: float | None
    tolerance: float = 0.0

    @property
    def regressed(self) -> bool:
        if self.baseline is None or self.current is None:
            return False
        return self.current < self.baseline - self.tolerance

    @property
    def delta(self) -> float | None:
        if self.baseline is None or self.current is None:
            return None
        return round(self.current - self.baseline, 2)

    def describe(self) -> str:
        if self.current is None:
            return "Coverage: not reported"
        if self.baseline is None:
            return f"Coverage: {self.current:g}% (no baseline yet)"
        delta = self.delta
        sign = "+" if delta >= 0 else ""
        text = f"Coverage: {self.current:g}% (baseline {self.baseline:g}%, {sign}{delta:g})"
        if self.regressed:
            text += " (REGRESSED)"
        return text


def load_baseline(path: str) -> float | None:
    if not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid coverage baseline {path}: {e}")
    value = data.get("coverage") if isinstance(data, dict) else None
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigurationError(f"Invalid coverage baseline {path}: missing 'coverage' number")
    return float(value)


def save_baseline(path: str, coverage: float) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    payload = {
        "coverage": coverage,
        "recorded_at": datetime.now(timezone.utc).isoformat(),
    }
    tmp = f"{path}.tmp"
    with open(tmp, "w") as f:
        json.dump(payload, f, indent=2)
        f.write("\n")
    os.replace(tmp, path)
    logger.info("Recorded coverage baseline %.2f%% in %s", coverage, path)


def compare(baseline: float | None, current: float | None, tolerance: float = 0.0) -> CoverageCheck:
    if tolerance < 0:
        raise ValueError("tolerance must not be negative")
    return CoverageCheck(baseline=baseline, current=current, tolerance=tolerance)
