"""
Field delimiter detection for tabular text.

Each candidate is scored by how consistently it occurs across the sampled
lines: identical per-line counts score count * 10, otherwise the score is
max(1, int(mean * 5 - variance)). A candidate found the same number of times
on every line always ranks ahead of one whose count varies; within a rank the
higher score wins, then the larger column count, then candidate order.
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple

CANDIDATE_DELIMITERS = [",", ";", "\t", "|", ":"]
DEFAULT_DELIMITER = ","

_QUOTED = re.compile(r'"(?:[^"]|"")*"')


def _strip_quoted(line: str) -> str:
    return _QUOTED.sub('""', line)


def score_delimiter(lines: List[str], delimiter: str) -> Tuple[int, float]:
    """
    Score one candidate over the sample.

    Returns:
        (score, mean per-line count); (0, 0.0) when it never occurs
    """
    counts = [line.count(delimiter) for line in lines]
    counts = [c for c in counts if c > 0]
    if not counts:
        return 0, 0.0

    mean = sum(counts) / len(counts)
    variance = sum((c - mean) ** 2 for c in counts) / len(counts)

    if variance == 0:
        return max(counts) * 10, mean
    return max(1, int(mean * 5 - variance)), mean


def is_consistent(lines: List[str], delimiter: str) -> bool:
    """True when the delimiter occurs the same, non-zero number of times on every line"""
    counts = {line.count(delimiter) for line in lines}
    return len(counts) == 1 and 0 not in counts


def rank_delimiter(lines: List[str], delimiter: str) -> Tuple[bool, int, float]:
    score, mean = score_delimiter(lines, delimiter)
    return is_consistent(lines, delimiter), score, mean


def detect_delimiter(
    lines: Iterable[str],
    candidates: Optional[List[str]] = None,
    min_score: int = 2
) -> str:
    """
    Pick the most consistent delimiter in the sampled lines.

    Falls back to a comma when every candidate scores below min_score.
    """
    sample = [_strip_quoted(line.rstrip("\r\n")) for line in lines if line.strip()]
    if not sample:
        return DEFAULT_DELIMITER

    ranks: Dict[str, Tuple[bool, int, float]] = {}
    for candidate in candidates or CANDIDATE_DELIMITERS:
        ranks[candidate] = rank_delimiter(sample, candidate)

    best = None
    for candidate, rank in ranks.items():
        if best is None or rank > ranks[best]:
            best = candidate

    if best is None or ranks[best][1] < min_score:
        return DEFAULT_DELIMITER
    return best
