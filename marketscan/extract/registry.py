"""Per data type pool of selector candidates with a test/score/discard lifecycle."""

import logging
from collections import deque
from datetime import datetime
from typing import Mapping, Optional, Sequence

from marketscan import metrics
from marketscan.errors import SelectorSyntaxError
from marketscan.extract.dom import PageDocument
from marketscan.extract.generator import (
    CurrentResult,
    SelectorCandidate,
    SelectorGenerator,
)
from marketscan.extract.selectors import parse_selector, to_css
from marketscan.extract.values import EXPECTED_DATA

logger = logging.getLogger(__name__)

FAILURE_PENALTY = 10


class SelectorRegistry:
    """Holds the selectors currently used for each data type.

    Candidates are tried in confidence order. Each test re-scores the
    candidate; one whose confidence stays below the floor after repeated
    consecutive failures is discarded.
    """

    def __init__(
        self,
        generator: SelectorGenerator,
        seed_selectors: Optional[Mapping[str, Sequence[str]]] = None,
        min_confidence: float = 30.0,
        max_failures: int = 3,
        max_candidates: int = 12,
        discard_history: int = 100,
    ):
        self.generator = generator
        self.min_confidence = min_confidence
        self.max_failures = max_failures
        self.max_candidates = max_candidates
        self._candidates: dict[str, list[SelectorCandidate]] = {}
        self.discarded: deque[SelectorCandidate] = deque(maxlen=discard_history)

        for data_type, selectors in (seed_selectors or {}).items():
            for text in selectors:
                try:
                    selector = parse_selector(text)
                except SelectorSyntaxError as e:
                    logger.warning(f"Skipping invalid seed selector {text!r} for {data_type}: {e}")
                    continue
                self.add(
                    SelectorCandidate(
                        selector=selector,
                        data_type=data_type,
                        confidence=generator.score_confidence(selector, 1),
                        strategy=generator.detect_strategy(selector),
                        origin="seed",
                    )
                )

    def data_types(self) -> list[str]:
        return list(self._candidates)

    def candidates(self, data_type: str) -> list[SelectorCandidate]:
        """Candidates for a data type, most confident first (stable for ties)."""
        return sorted(self._candidates.get(data_type, []), key=lambda c: -c.confidence)

    def best(self, data_type: str) -> Optional[SelectorCandidate]:
        ranked = self.candidates(data_type)
        return ranked[0] if ranked else None

    def add(self, candidate: SelectorCandidate) -> bool:
        """
        Register a candidate unless an equivalent selector is already held.

        When the pool is full the least confident candidate is evicted, but
        only if the newcomer scores higher.
        """
        pool = self._candidates.setdefault(candidate.data_type, [])
        css = candidate.css
        if any(existing.css == css for existing in pool):
            return False
        if len(pool) >= self.max_candidates:
            weakest = min(pool, key=lambda c: c.confidence)
            if weakest.confidence >= candidate.confidence:
                return False
            pool.remove(weakest)
            self.discarded.append(weakest)
        pool.append(candidate)
        return True

    def record_test(self, candidate: SelectorCandidate, match_count: int, success: bool) -> bool:
        """
        Re-score a candidate after testing it against a page.

        Args:
            candidate: Candidate that was tried
            match_count: Elements it matched in the tested scope
            success: Whether it produced a usable value

        Returns:
            False if the candidate was discarded
        """
        candidate.match_count = match_count
        candidate.is_unique = match_count == 1
        candidate.last_tested_at = datetime.utcnow()
        if success:
            candidate.successes += 1
            candidate.consecutive_failures = 0
        else:
            candidate.consecutive_failures += 1

        base = self.generator.score_confidence(candidate.selector, match_count)
        candidate.confidence = max(0.0, min(100.0, base - FAILURE_PENALTY * candidate.consecutive_failures))

        if (
            candidate.consecutive_failures >= self.max_failures
            and candidate.confidence < self.min_confidence
        ):
            self.discard(candidate)
            return False
        return True

    def discard(self, candidate: SelectorCandidate):
        pool = self._candidates.get(candidate.data_type, [])
        if candidate in pool:
            pool.remove(candidate)
            self.discarded.append(candidate)
            logger.info(
                f"Discarded {candidate.data_type} selector {candidate.css} "
                f"after {candidate.consecutive_failures} failures (confidence {candidate.confidence:.0f})"
            )
            metrics.record_selector_evolution(candidate.data_type, "discarded")

    def repair(
        self,
        data_type: str,
        document: PageDocument,
        current: Sequence[CurrentResult] = (),
    ) -> list[SelectorCandidate]:
        """
        Evolve the selectors in use and discover new ones on a page.

        Args:
            data_type: Data type whose extraction failed or degraded
            document: Page the failure happened on
            current: What the selectors in use produced, if anything

        Returns:
            Candidates newly added to the registry
        """
        added: list[SelectorCandidate] = []

        if not current:
            current = [
                CurrentResult(selector=c.selector, data_type=data_type, value=None)
                for c in self.candidates(data_type)[:3]
            ]
        for evolution in self.generator.evolve_selectors(current, EXPECTED_DATA, document):
            candidate = SelectorCandidate(
                selector=evolution.evolved,
                data_type=data_type,
                confidence=evolution.confidence,
                strategy=self.generator.detect_strategy(evolution.evolved),
                origin="evolution",
            )
            if self.add(candidate):
                added.append(candidate)
                metrics.record_selector_evolution(data_type, evolution.reason)

        for candidate in self.generator.discover_new_patterns(document, data_type):
            if self.add(candidate):
                added.append(candidate)
                metrics.record_selector_evolution(data_type, "discovered")

        if added:
            logger.info(
                f"Repaired {data_type} selectors: added {', '.join(c.css for c in added[:5])}"
                + (f" and {len(added) - 5} more" if len(added) > 5 else "")
            )
        else:
            logger.warning(f"No replacement selectors found for {data_type}")
        return added

    def snapshot(self) -> dict[str, list[dict]]:
        return {dt: [c.to_dict() for c in self.candidates(dt)] for dt in self._candidates}

    def __contains__(self, css: str) -> bool:
        return any(c.css == css for pool in self._candidates.values() for c in pool)

    def find(self, data_type: str, css: str) -> Optional[SelectorCandidate]:
        css = to_css(parse_selector(css))
        for candidate in self._candidates.get(data_type, []):
            if candidate.css == css:
                return candidate
        return None
