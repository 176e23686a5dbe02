"""
Pluggable rule sets for zero-cost message heuristics.

A rule is a named predicate over an EmailFacts snapshot; a RuleSet is an
ordered list of rules evaluated first-match-wins. Rule sets are plain data
so each rule can be unit-tested on its own and shops of new languages can
get extra rules without touching the pipeline.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Pattern

import structlog

from support_pipeline.heuristics.text import normalize_text

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailFacts:
    """
    Normalized view of one inbound email, built once per processing attempt.

    Attributes:
        sender: Lowercased sender address
        subject: Raw subject
        body: Cleaned body (quotes and signature removed)
        headers: Automation headers, keys lowercased
        norm_subject: normalize_text(subject)
        norm_body: normalize_text(body)
    """

    sender: str
    subject: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    norm_subject: str = ""
    norm_body: str = ""

    @classmethod
    def build(
        cls,
        sender: str,
        subject: Optional[str],
        body: Optional[str],
        headers: Optional[dict[str, str]] = None,
    ) -> "EmailFacts":
        return cls(
            sender=(sender or "").strip().lower(),
            subject=subject or "",
            body=body or "",
            headers={k.lower(): str(v) for k, v in (headers or {}).items()},
            norm_subject=normalize_text(subject),
            norm_body=normalize_text(body),
        )

    @property
    def sender_local(self) -> str:
        return self.sender.split("@", 1)[0]

    @property
    def norm_text(self) -> str:
        return f"{self.norm_subject}\n{self.norm_body}".strip()


Predicate = Callable[[EmailFacts], bool]


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Predicate

    def matches(self, facts: EmailFacts) -> bool:
        return bool(self.predicate(facts))


@dataclass(frozen=True)
class RuleMatch:
    rule_set: str
    rule: str


class RuleSet:
    """
    Ordered, first-match-wins collection of rules.

    Usage:
        >>> rules = RuleSet("ack", [Rule("thanks", lambda f: f.norm_body == "thanks")])
        >>> rules.first_match(EmailFacts.build("a@b.com", "", "Thanks")).rule
        'thanks'
    """

    def __init__(self, name: str, rules: Iterable[Rule]):
        self.name = name
        self.rules: list[Rule] = list(rules)

    def first_match(self, facts: EmailFacts) -> Optional[RuleMatch]:
        for rule in self.rules:
            if rule.matches(facts):
                logger.debug("Heuristic rule matched", rule_set=self.name, rule=rule.name)
                return RuleMatch(rule_set=self.name, rule=rule.name)
        return None

    def matches(self, facts: EmailFacts) -> bool:
        return self.first_match(facts) is not None

    def extend(self, rules: Iterable[Rule]) -> "RuleSet":
        return RuleSet(self.name, [*self.rules, *rules])

    def __len__(self) -> int:
        return len(self.rules)


def any_pattern(patterns: Iterable[Pattern[str]], text_of: Callable[[EmailFacts], str]) -> Predicate:
    """Predicate that is true when any regex finds a match in the selected text."""
    compiled = list(patterns)

    def predicate(facts: EmailFacts) -> bool:
        text = text_of(facts)
        return bool(text) and any(p.search(text) for p in compiled)

    return predicate


def any_phrase(phrases: Iterable[str], text_of: Callable[[EmailFacts], str]) -> Predicate:
    """Predicate that is true when any (normalized) phrase is a substring of the text."""
    normalized = [normalize_text(p) for p in phrases]

    def predicate(facts: EmailFacts) -> bool:
        text = text_of(facts)
        return bool(text) and any(p in text for p in normalized)

    return predicate
