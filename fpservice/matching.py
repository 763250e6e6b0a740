"""Match engine

This module contains:
- MatchEngine.verify: 1:1 comparison of a probe against one stored template
- MatchEngine.identify: 1:N search over the template pool

Confidence values come from the SDK ``compare`` capability (0-100). A probe
that scored below the matching quality gate is rejected before any comparison.
"""

from __future__ import annotations

import time
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from .config import EngineSettings
from .errors import ErrorCode, FingerprintError
from .logger import log_biometric
from .models import CaptureAttempt, MatchResult
from .sdk import BiometricEngine

Probe = Union[bytes, CaptureAttempt]


class MatchEngine:
    """1:1 verification and 1:N identification against SDK confidences.

    Attributes:
        engine: Biometric SDK providing ``compare``
        settings: Thresholds, top-k and identify timeout
    """

    def __init__(
        self,
        engine: BiometricEngine,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.settings = settings or EngineSettings()
        self.clock = clock

    def verify(
        self,
        probe: Probe,
        stored: bytes,
        threshold: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> MatchResult:
        """1:1 verification: does the probe match the stored template?

        Args:
            probe: Probe template bytes or the CaptureAttempt that produced them
            stored: Enrolled template of the claimed user
            threshold: Acceptance confidence (verification default if None)
            user_id: Claimed user, echoed in the result

        Returns:
            MatchResult with ``match = confidence >= threshold``. A non-match is
            a normal result, not an error.

        Raises:
            FingerprintError: LOW_QUALITY for a probe below the gate,
                MATCH_FAILED if the comparison itself fails
        """
        template = self._probe_template(probe)
        threshold = self.settings.resolve_threshold(threshold, purpose="verify")
        if not stored:
            raise FingerprintError(ErrorCode.USER_NOT_FOUND, details={"userId": user_id})

        start = self.clock()
        confidence = self._compare(template, stored, user_id)
        elapsed_ms = (self.clock() - start) * 1000.0

        result = MatchResult(
            match=confidence >= threshold,
            confidence=confidence,
            threshold=threshold,
            elapsed_ms=round(elapsed_ms, 3),
            user_id=user_id,
            candidates_checked=1,
        )
        log_biometric("VERIFY", user_id, "MATCH" if result.match else "NO_MATCH",
                      details={"confidence": confidence, "threshold": threshold})
        return result

    def identify(
        self,
        probe: Probe,
        pool: Iterable[Tuple[str, bytes]],
        threshold: Optional[float] = None,
        candidate_user_ids: Optional[Sequence[str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> MatchResult:
        """1:N identification over the whole pool.

        Every entry is compared; the highest confidence clearing the
        threshold wins, ties going to the lexicographically lowest user id.

        Args:
            probe: Probe template bytes or its CaptureAttempt
            pool: ``(user_id, template)`` pairs, read once
            threshold: Acceptance confidence (identification default if None)
            candidate_user_ids: Optional subset to restrict the search to
            timeout_ms: Bound on the scan (settings default if None)

        Returns:
            MatchResult; an empty pool yields ``match=False`` with confidence 0

        Raises:
            FingerprintError: LOW_QUALITY, MATCH_FAILED or OPERATION_TIMEOUT
        """
        template = self._probe_template(probe)
        threshold = self.settings.resolve_threshold(threshold, purpose="identify")
        timeout_ms = timeout_ms or self.settings.identify_timeout_ms
        subset = set(candidate_user_ids) if candidate_user_ids is not None else None

        start = self.clock()
        deadline = start + timeout_ms / 1000.0
        scores: List[Tuple[str, float]] = []

        for user_id, stored in pool:
            if subset is not None and user_id not in subset:
                continue
            if self.clock() > deadline:
                raise FingerprintError(
                    ErrorCode.OPERATION_TIMEOUT,
                    f"Identification exceeded {timeout_ms}ms",
                    {"candidatesChecked": len(scores), "timeoutMs": timeout_ms},
                )
            scores.append((user_id, self._compare(template, stored, user_id)))

        elapsed_ms = (self.clock() - start) * 1000.0
        scores.sort(key=lambda item: (-item[1], item[0]))
        top_matches = scores[:self.settings.identify_top_k]

        if scores and scores[0][1] >= threshold:
            best_id, best = scores[0]
            result = MatchResult(True, best, threshold, round(elapsed_ms, 3), best_id,
                                 len(scores), top_matches)
        else:
            best = scores[0][1] if scores else 0.0
            result = MatchResult(False, best, threshold, round(elapsed_ms, 3), None,
                                 len(scores), top_matches)

        log_biometric("IDENTIFY", result.user_id, "MATCH" if result.match else "NO_MATCH",
                      details={"confidence": result.confidence, "threshold": threshold,
                               "candidates": len(scores)})
        return result

    def _probe_template(self, probe: Probe) -> bytes:
        if isinstance(probe, CaptureAttempt):
            gate = self.settings.match_min_quality
            if probe.quality < gate or not probe.template:
                raise FingerprintError(
                    ErrorCode.LOW_QUALITY,
                    f"Probe quality {probe.quality} below matching minimum {gate}",
                    {"quality": probe.quality, "minQuality": gate},
                )
            return probe.template

        if not probe:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, "Empty probe template")
        return bytes(probe)

    def _compare(self, probe: bytes, stored: bytes, user_id: Optional[str]) -> float:
        try:
            confidence = float(self.engine.compare(probe, stored))
        except Exception as exc:
            raise FingerprintError(
                ErrorCode.MATCH_FAILED,
                f"Comparison failed: {exc}",
                {"userId": user_id},
            ) from exc
        return round(max(0.0, min(100.0, confidence)), 2)
