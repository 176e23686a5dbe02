"""
Zero-cost email heuristics.

- text.py: body cleaning, subject threading, address and order-number extraction
- rules.py: ordered, pluggable rule sets over normalized email facts
- filters.py: system-sender, forwarding-echo, spam, acknowledgment,
  auto-responder and frustration rule sets
"""

from support_pipeline.heuristics.filters import HeuristicFilters, is_valid_sender
from support_pipeline.heuristics.rules import EmailFacts, Rule, RuleMatch, RuleSet

__all__ = [
    "HeuristicFilters",
    "is_valid_sender",
    "EmailFacts",
    "Rule",
    "RuleMatch",
    "RuleSet",
]
