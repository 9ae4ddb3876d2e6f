from __future__ import annotations

import re
from itertools import combinations
from typing import Iterable, Protocol, Sequence

from ..schemas.results import QualityBreakdown
from ..schemas.scene import Emotion, SceneAnalysis

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)

_EMOTION_KEYWORDS: dict[Emotion, frozenset[str]] = {
    Emotion.POSITIVE: frozenset(
        {"happy", "glad", "great", "good", "nice", "pleased", "wonderful", "love", "awesome", "excellent"}
    ),
    Emotion.NEGATIVE: frozenset(
        {"sad", "upset", "disappointed", "terrible", "bad", "awful", "hurt", "lonely", "sorry", "miserable"}
    ),
    Emotion.EXCITED: frozenset({"excited", "thrilled", "amazing", "wow", "incredible", "fantastic"}),
    Emotion.WORRIED: frozenset({"worried", "anxious", "nervous", "afraid", "scared", "concerned"}),
    Emotion.ANGRY: frozenset({"angry", "furious", "annoyed", "mad", "outraged", "frustrated"}),
}

_CONTRADICTION_PAIRS: tuple[tuple[str, str], ...] = (
    ("yes", "no"),
    ("can", "cannot"),
    ("good", "bad"),
    ("right", "wrong"),
    ("agree", "disagree"),
    ("support", "oppose"),
    ("possible", "impossible"),
    ("true", "false"),
)

# detected emotion compatibility keyed by the scene's target emotion
EMOTION_COMPATIBILITY: dict[Emotion, dict[Emotion, float]] = {
    Emotion.POSITIVE: {Emotion.EXCITED: 0.8, Emotion.NEUTRAL: 0.6, Emotion.NEGATIVE: 0.2},
    Emotion.NEGATIVE: {Emotion.WORRIED: 0.8, Emotion.NEUTRAL: 0.6, Emotion.POSITIVE: 0.2},
    Emotion.NEUTRAL: {
        Emotion.POSITIVE: 0.7,
        Emotion.NEGATIVE: 0.7,
        Emotion.EXCITED: 0.5,
        Emotion.WORRIED: 0.5,
    },
    Emotion.EXCITED: {Emotion.POSITIVE: 0.8, Emotion.NEUTRAL: 0.5, Emotion.NEGATIVE: 0.1},
    Emotion.WORRIED: {Emotion.NEGATIVE: 0.8, Emotion.NEUTRAL: 0.5, Emotion.POSITIVE: 0.1},
}
_DEFAULT_COMPATIBILITY = 0.3


def tokenize(text: str) -> set[str]:
    return set(_TOKEN_PATTERN.findall(text.lower()))


def _clamp(value: float) -> float:
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return value


def _mean(values: Iterable[float], default: float) -> float:
    collected = list(values)
    if not collected:
        return default
    return sum(collected) / len(collected)


class TextScorer(Protocol):
    def score_similarity(self, first: str, second: str) -> float:
        ...

    def detect_emotion(self, text: str) -> Emotion:
        ...


class LexicalTextScorer:
    """Token-overlap similarity and keyword emotion detection."""

    def score_similarity(self, first: str, second: str) -> float:
        left = tokenize(first)
        right = tokenize(second)
        union = left | right
        if not union:
            return 0.0
        return len(left & right) / len(union)

    def detect_emotion(self, text: str) -> Emotion:
        tokens = tokenize(text)
        counts = {emotion: len(tokens & keywords) for emotion, keywords in _EMOTION_KEYWORDS.items()}
        best = max(counts.values())
        if best == 0:
            return Emotion.NEUTRAL
        leaders = [emotion for emotion, count in counts.items() if count == best]
        if len(leaders) > 1:
            return Emotion.NEUTRAL
        return leaders[0]

    def contradiction(self, first: str, second: str) -> float:
        left = tokenize(first)
        right = tokenize(second)
        hits = 0
        for positive, negative in _CONTRADICTION_PAIRS:
            if (positive in left and negative in right) or (negative in left and positive in right):
                hits += 1
        return min(hits * 0.2, 1.0)


class QualityAssessor:
    """Measure the five quality dimensions of a response set.

    Coherence blends pairwise similarity with a contradiction penalty,
    completeness rewards length and responder coverage, relevance is the share
    of user-message tokens echoed by each response, diversity is pairwise
    dissimilarity and emotional alignment is scaled by the scene's intensity.
    """

    def __init__(
        self,
        scorer: TextScorer | None = None,
        *,
        ideal_length: int = 150,
        neutral_alignment: float = 0.7,
    ) -> None:
        self._scorer = scorer or LexicalTextScorer()
        self._ideal_length = max(1, ideal_length)
        self._neutral_alignment = neutral_alignment

    @property
    def scorer(self) -> TextScorer:
        return self._scorer

    def similarity(self, first: str, second: str) -> float:
        return _clamp(self._scorer.score_similarity(first, second))

    def relevance(self, response: str, user_message: str) -> float:
        user_tokens = tokenize(user_message)
        if not user_tokens:
            return 0.0
        return _clamp(len(tokenize(response) & user_tokens) / len(user_tokens))

    def alignment(self, response: str, target: Emotion) -> float:
        detected = self._scorer.detect_emotion(response)
        if detected == target:
            return 1.0
        return EMOTION_COMPATIBILITY.get(target, {}).get(detected, _DEFAULT_COMPATIBILITY)

    def mean_pairwise_similarity(self, responses: Sequence[str]) -> float:
        return _mean(
            (self.similarity(first, second) for first, second in combinations(responses, 2)),
            default=1.0,
        )

    def measure(
        self,
        responses: Sequence[str],
        user_message: str,
        scene: SceneAnalysis | None = None,
    ) -> QualityBreakdown:
        if not responses:
            return QualityBreakdown()
        return QualityBreakdown(
            coherence=round(self._coherence(responses), 4),
            completeness=round(self._completeness(responses), 4),
            relevance=round(_mean((self.relevance(text, user_message) for text in responses), 0.0), 4),
            diversity=round(self._diversity(responses), 4),
            emotional_alignment=round(self._emotional_alignment(responses, scene), 4),
        )

    def _coherence(self, responses: Sequence[str]) -> float:
        contradiction = getattr(self._scorer, "contradiction", None)
        scores = []
        for first, second in combinations(responses, 2):
            penalty = contradiction(first, second) if contradiction is not None else 0.0
            scores.append(self.similarity(first, second) * 0.3 + (1.0 - penalty) * 0.7)
        return _clamp(_mean(scores, default=1.0))

    def _completeness(self, responses: Sequence[str]) -> float:
        average_length = sum(len(text) for text in responses) / len(responses)
        length_score = min(average_length / self._ideal_length, 1.0)
        coverage = 1.0 if len(responses) >= 2 else len(responses) / 2
        return _clamp(length_score * 0.6 + coverage * 0.4)

    def _diversity(self, responses: Sequence[str]) -> float:
        return _clamp(
            _mean(
                (1.0 - self.similarity(first, second) for first, second in combinations(responses, 2)),
                default=1.0,
            )
        )

    def _emotional_alignment(self, responses: Sequence[str], scene: SceneAnalysis | None) -> float:
        if scene is None:
            return self._neutral_alignment
        average = _mean((self.alignment(text, scene.emotion) for text in responses), default=0.0)
        return _clamp(average * min(scene.emotional_intensity + 0.3, 1.0))


__all__ = [
    "EMOTION_COMPATIBILITY",
    "LexicalTextScorer",
    "QualityAssessor",
    "TextScorer",
    "tokenize",
]
