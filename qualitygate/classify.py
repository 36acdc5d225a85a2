"""Pluggable diagnostic classification for failed step output."""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Protocol

from qualitygate.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Finding:
    pattern: str
    suggested_fix: str


class Classifier(Protocol):
    def classify(self, lines: Iterable[str]) -> list[Finding]: ...


class PatternClassifier:
    """Matches output lines against a table of regexes.

    Fix templates may reference regex groups as ``{1}``, ``{2}`` or by name.
    Each rule reports at most once per output.
    """

    def __init__(self, rules: list[tuple[str, str]]):
        self.rules = []
        for pattern, fix in rules:
            try:
                self.rules.append((re.compile(pattern), fix))
            except re.error as e:
                raise ConfigurationError(f"Invalid classifier pattern {pattern!r}: {e}")

    def classify(self, lines: Iterable[str]) -> list[Finding]:
        findings = []
        remaining = list(self.rules)
        for line in lines:
            for rule in list(remaining):
                regex, fix = rule
                match = regex.search(line)
                if match is None:
                    continue
                findings.append(Finding(pattern=regex.pattern, suggested_fix=_fill(fix, match)))
                remaining.remove(rule)
            if not remaining:
                break
        return findings


def _fill(template: str, match: re.Match) -> str:
    # {0} is the whole match so {1} lines up with the first group
    positional = [match.group(0)] + [g or "" for g in match.groups()]
    named = {k: v or "" for k, v in match.groupdict().items()}
    try:
        return template.format(*positional, **named)
    except (KeyError, IndexError, ValueError):
        logger.debug("Could not fill fix template %r", template)
        return template
