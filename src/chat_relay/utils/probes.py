"""Prioritized structural probes: the first probe that matches wins."""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PatternProbe:
    """A named regex probe over cleaned surface text."""

    name: str
    pattern: str
    flags: int = re.MULTILINE

    def search(self, text: str) -> Optional[re.Match]:
        return re.search(self.pattern, text, self.flags)


def first_match(probes: Iterable[Callable[[str], Optional[T]]], text: str) -> Optional[T]:
    """Run probes in priority order and return the first non-empty result.

    A probe that raises is logged and skipped, so one bad probe never hides
    the ones after it.
    """
    for probe in probes:
        try:
            result = probe(text)
        except (re.error, ValueError) as e:
            logger.debug(f"Probe {getattr(probe, '__name__', probe)!r} failed: {e}")
            continue
        if result:
            return result
    return None


def matching_names(probes: List[PatternProbe], text: str) -> List[str]:
    """Names of every probe that matches, in priority order (debug output)."""
    return [probe.name for probe in probes if probe.search(text)]
