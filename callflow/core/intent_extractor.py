"""
Intent, entity and sentiment extraction for caller utterances.

The default ``PatternIntentExtractor`` is a deterministic rule table: an
ordered list of ``IntentRule`` records evaluated first-match-wins, a set of
entity patterns applied independently, and a keyword vote for sentiment. It
has no side effects, so it can be swapped for a statistical classifier that
implements the same ``IntentClassifier`` protocol.
"""

import re
from typing import Dict, List, NamedTuple, Optional, Pattern, Protocol, Sequence, Tuple

from callflow.models.conversation import Intent, MessageAnalysis, Sentiment


class IntentClassifier(Protocol):
    def analyze(self, utterance: str) -> MessageAnalysis: ...


class IntentRule(NamedTuple):
    intent: Intent
    pattern: Pattern
    confidence: float


def _rule(intent: Intent, pattern: str, confidence: float) -> IntentRule:
    return IntentRule(intent, re.compile(pattern, re.IGNORECASE), confidence)


# Order matters: the first matching rule wins.
DEFAULT_INTENT_RULES: Tuple[IntentRule, ...] = (
    _rule(Intent.GREETING, r"^\s*(hi|hello|hey|good morning|good afternoon|good evening)\b", 0.95),
    _rule(
        Intent.APPOINTMENT_BOOKING,
        r"\b(schedule|book|appointment|meeting|visit|come in|available|slot)",
        0.9,
    ),
    _rule(Intent.SERVICE_INQUIRY, r"\b(service|help|what do you|do you offer|provide|need)", 0.85),
    _rule(Intent.PRICING_REQUEST, r"\b(price|cost|how much|quote|estimate|rate|fee)", 0.9),
    _rule(
        Intent.EMERGENCY,
        r"\b(emergency|urgent|asap|immediately|broke|not working|help)",
        0.95,
    ),
    _rule(Intent.GOODBYE, r"\b(bye|goodbye|thank you|thanks|that's all|have a good)", 0.9),
)

DEFAULT_INTENT = Intent.INFORMATION_REQUEST
DEFAULT_CONFIDENCE = 0.7

ENTITY_PATTERNS: Dict[str, Pattern] = {
    "phone": re.compile(r"(\+?1[-.\s]?)?\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "time": re.compile(
        r"\b(\d{1,2}:\d{2}(?:\s?[ap]m)?|\d{1,2}\s?[ap]m|morning|afternoon|evening|noon)\b",
        re.IGNORECASE,
    ),
    "date": re.compile(
        r"\b(today|tomorrow|next week|monday|tuesday|wednesday|thursday|friday|saturday|sunday"
        r"|\d{1,2}/\d{1,2}(?:/\d{2,4})?)\b",
        re.IGNORECASE,
    ),
}

# First word of "my name is" may be lower case; every further word must be capitalised.
NAME_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"\b(?i:my name is)\s+([A-Za-z][a-z'\-]*(?:\s+[A-Z][a-z'\-]*){0,2})"),
    re.compile(r"\b(?i:i'm|i am|this is)\s+([A-Z][a-z'\-]+(?:\s+[A-Z][a-z'\-]+){0,2})"),
)

POSITIVE_WORDS = frozenset(
    ["great", "good", "excellent", "wonderful", "fantastic", "pleased", "happy", "satisfied"]
)
NEGATIVE_WORDS = frozenset(
    ["bad", "terrible", "awful", "horrible", "disappointed", "angry", "frustrated", "upset"]
)


class PatternIntentExtractor:
    """Rule-based implementation of ``IntentClassifier``."""

    def __init__(
        self,
        rules: Sequence[IntentRule] = DEFAULT_INTENT_RULES,
        default_intent: Intent = DEFAULT_INTENT,
        default_confidence: float = DEFAULT_CONFIDENCE,
    ):
        self.rules: List[IntentRule] = list(rules)
        self.default_intent = default_intent
        self.default_confidence = default_confidence

    def classify(self, utterance: str) -> Tuple[Intent, float]:
        for rule in self.rules:
            if rule.pattern.search(utterance):
                return rule.intent, rule.confidence
        return self.default_intent, self.default_confidence

    def extract_entities(self, utterance: str) -> Dict[str, str]:
        entities: Dict[str, str] = {}
        for name, pattern in ENTITY_PATTERNS.items():
            match = pattern.search(utterance)
            if match:
                entities[name] = match.group(0).strip()
        name = self.extract_name(utterance)
        if name:
            entities["name"] = name
        return entities

    @staticmethod
    def extract_name(utterance: str) -> Optional[str]:
        for pattern in NAME_PATTERNS:
            match = pattern.search(utterance)
            if match:
                return match.group(1).strip().title()
        return None

    @staticmethod
    def analyze_sentiment(utterance: str) -> Sentiment:
        words = re.findall(r"[a-z']+", utterance.lower())
        positive = sum(1 for word in words if word in POSITIVE_WORDS)
        negative = sum(1 for word in words if word in NEGATIVE_WORDS)
        if positive > negative:
            return Sentiment.POSITIVE
        if negative > positive:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL

    def analyze(self, utterance: str) -> MessageAnalysis:
        intent, confidence = self.classify(utterance)
        return MessageAnalysis(
            intent=intent,
            confidence=confidence,
            entities=self.extract_entities(utterance),
            sentiment=self.analyze_sentiment(utterance),
        )
