"""Matching engine: alignment search, scoring, and library ranking."""

import logging
import math
import multiprocessing
from dataclasses import dataclass, replace

import numpy as np

from .config import (
    GOOD_MATCH_DIFF,
    GOOD_MATCH_WEIGHT,
    STREAK_MIN,
    STREAK_BONUS,
    COARSE_STEPS,
)

logger = logging.getLogger(__name__)

SLIDE_INPUT = "slide-input"
SLIDE_WINDOW = "slide-window"


@dataclass(frozen=True, eq=False)
class Song:
    id: str
    name: str
    fingerprint: np.ndarray


@dataclass(frozen=True)
class MatchResult:
    raw_score: float
    normalized_score: float
    position: int
    match_quality: float
    strategy: str = SLIDE_INPUT
    compare_length: int = 0

    @property
    def matched(self) -> bool:
        return self.position >= 0


NO_MATCH = MatchResult(
    raw_score=math.inf,
    normalized_score=math.inf,
    position=-1,
    match_quality=0.0,
)


@dataclass(frozen=True)
class RankedMatch:
    song: Song
    result: MatchResult
    confidence: float

    @property
    def name(self) -> str:
        return self.song.name

    @property
    def avg_diff(self) -> float:
        """Raw score per compared value at the best alignment."""
        if not self.result.compare_length:
            return math.inf
        return self.result.raw_score / self.result.compare_length

    @property
    def match_quality_percent(self) -> float:
        return self.result.match_quality * 100.0

    @property
    def position(self) -> int:
        return self.result.position

    @property
    def strategy(self) -> str:
        return self.result.strategy


# ---------------------------------------------------------------------------
# Alignment scoring
# ---------------------------------------------------------------------------

def alignment_score(a: np.ndarray, b: np.ndarray) -> tuple[float, float]:
    """
    Score two equal-length aligned slices. Returns (raw_score, match_quality).

    Good matches (|a - b| <= GOOD_MATCH_DIFF) cost diff * GOOD_MATCH_WEIGHT, others cost
    diff. Every step at which the current good-match streak is >= STREAK_MIN earns
    streak * STREAK_BONUS off the raw score, so sustained runs beat scattered hits.
    """
    diff = np.abs(np.asarray(a, dtype=np.int64) - np.asarray(b, dtype=np.int64))
    n = len(diff)
    if n == 0:
        return 0.0, 0.0
    good = diff <= GOOD_MATCH_DIFF

    raw = float(np.where(good, diff * GOOD_MATCH_WEIGHT, diff).sum())

    # Streak length at each step: distance back to the last bad step
    idx = np.arange(n)
    last_bad = np.maximum.accumulate(np.where(good, -1, idx))
    streak = np.where(good, idx - last_bad, 0)
    raw -= float(streak[streak >= STREAK_MIN].sum()) * STREAK_BONUS

    return raw, float(good.sum()) / n


def _normalize(raw: float, quality: float, compare_length: int) -> float:
    """Average cost per step, inflated by up to 2x when few steps matched well."""
    return raw / compare_length * (2 - quality)


def _search(window: np.ndarray, scanned: np.ndarray, exhaustive: bool) -> tuple[float, float, int, float]:
    """
    Find the offset into `scanned` where `window` aligns best.
    Coarse pass at a stride, then every offset within one stride of the coarse best.
    Returns (normalized_score, raw_score, position, match_quality).
    """
    compare_length = len(window)
    last_offset = len(scanned) - compare_length
    step = 1 if exhaustive else max(1, compare_length // COARSE_STEPS)

    best = (math.inf, math.inf, -1, 0.0)

    def _try(offset: int):
        nonlocal best
        raw, quality = alignment_score(window, scanned[offset:offset + compare_length])
        norm = _normalize(raw, quality, compare_length)
        if norm < best[0]:
            best = (norm, raw, offset, quality)

    for offset in range(0, last_offset + 1, step):
        _try(offset)

    if step > 1 and best[2] >= 0:
        lo = max(0, best[2] - step)
        hi = min(last_offset, best[2] + step)
        for offset in range(lo, hi + 1):
            _try(offset)

    return best


def match_fingerprint(query: np.ndarray, target: np.ndarray, exhaustive: bool = False) -> MatchResult:
    """
    Best alignment of a query fingerprint against one stored fingerprint.

    The shorter side is the fixed-size window and is slid across the longer one:
    "slide-input" when the query fits inside the target, "slide-window" otherwise.
    `position` is an offset into the longer (scanned) sequence. An empty side
    yields NO_MATCH.
    """
    query = np.asarray(query)
    target = np.asarray(target)
    if len(query) == 0 or len(target) == 0:
        return replace(NO_MATCH, strategy=SLIDE_INPUT if len(query) <= len(target) else SLIDE_WINDOW)

    if len(query) <= len(target):
        window, scanned, strategy = query, target, SLIDE_INPUT
    else:
        window, scanned, strategy = target, query, SLIDE_WINDOW

    norm, raw, position, quality = _search(window, scanned, exhaustive)
    return MatchResult(
        raw_score=raw,
        normalized_score=norm,
        position=position,
        match_quality=quality,
        strategy=strategy,
        compare_length=len(window),
    )


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

def _match_worker(args: tuple) -> MatchResult:
    query, target, exhaustive = args
    return match_fingerprint(query, target, exhaustive)


def confidences(scores: list[float]) -> list[float]:
    """
    Relative confidence (0–100) for each normalized score: best 100, worst 0,
    all-equal 50. Infinite scores (no match) get 0 and don't stretch the range.
    """
    finite = [s for s in scores if math.isfinite(s)]
    if not finite:
        return [0.0] * len(scores)
    lo, hi = min(finite), max(finite)
    spread = hi - lo

    out = []
    for s in scores:
        if not math.isfinite(s):
            out.append(0.0)
        elif spread == 0:
            out.append(50.0)
        else:
            out.append(100.0 * (1 - (s - lo) / spread))
    return out


def rank(
    query: np.ndarray,
    songs: list[Song],
    workers: int = 1,
    exhaustive: bool = False,
) -> list[RankedMatch]:
    """
    Match the query against every song and return all of them, best first.
    Sorted by normalized score, which is comparable across fingerprint lengths.
    Confidence is relative to this candidate set. No songs → empty list.
    """
    if not songs:
        return []

    logger.debug("Matching %d-value query against %d songs", len(query), len(songs))
    work = [(query, song.fingerprint, exhaustive) for song in songs]
    if workers and workers > 1 and len(songs) > 1:
        with multiprocessing.Pool(processes=min(workers, len(songs))) as pool:
            results = pool.map(_match_worker, work)
    else:
        results = [_match_worker(w) for w in work]

    pairs = sorted(zip(songs, results), key=lambda p: p[1].normalized_score)
    conf = confidences([r.normalized_score for _, r in pairs])
    return [RankedMatch(song=s, result=r, confidence=c) for (s, r), c in zip(pairs, conf)]
