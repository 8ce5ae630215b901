"""Rule-based query expansion for the sparse (BM25) path.

A question like "what results do customers see" shares no terms with a
passage saying "70% reduction in data-entry time". Each rule pairs a
trigger pattern with keywords that bridge that gap; matching rules append
their keywords to the question. Expansion only ever appends: original
terms are never rewritten or removed.

The default keyword tables are tuned to one site's vocabulary. Deployments
replace them with a JSON rule file::

    [
      {"name": "safety", "pattern": "(safety|accident)", "keywords": ["compliance", "risk"]}
    ]
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from sitechat.errors import ConfigurationError
from sitechat.tokenizer import tokenize

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExpansionRule:
    """Trigger pattern (case-insensitive) and the keywords it appends."""

    name: str
    pattern: re.Pattern
    keywords: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def compile(cls, name: str, pattern: str, keywords: Iterable[str]) -> "ExpansionRule":
        return cls(name=name, pattern=re.compile(pattern, re.IGNORECASE), keywords=tuple(keywords))

    def matches(self, question: str) -> bool:
        return self.pattern.search(question) is not None


DEFAULT_RULES: Tuple[ExpansionRule, ...] = (
    ExpansionRule.compile(
        "results",
        r"(results?|benefits?|outcomes?|improvements?|impact|achieve|see|experience)",
        [
            "percentage", "metrics", "statistics", "improvements",
            "increase", "decrease", "reduction", "efficiency",
            "productivity", "engagement", "data-entry", "accidents",
            "insights", "actionable", "proven", "ROI",
        ],
    ),
    ExpansionRule.compile(
        "statistics",
        r"(how much|how many|percentage|percent|number|stat|metric)",
        [
            "70percent", "62percent", "45percent", "1.8x",
            "increase", "reduction", "drop", "less", "more",
        ],
    ),
    ExpansionRule.compile(
        "efficiency",
        r"(fast|quick|efficient|speed|time|performance)",
        [
            "data-entry", "productivity", "workflow", "automation",
            "time-savings", "faster", "reduction",
        ],
    ),
    ExpansionRule.compile(
        "safety",
        r"(safety|accident|injury|incident|compliance|hazard)",
        [
            "workplace", "accidents", "injuries", "compliance",
            "risk", "ergonomics", "OSHA", "safety",
        ],
    ),
    ExpansionRule.compile(
        "technology",
        r"(\bai\b|artificial intelligence|technology|automation|digital)",
        [
            "AI-powered", "automation", "digitize", "no-code",
            "machine-learning", "intelligent", "smart",
        ],
    ),
)


class QueryExpander:
    """Appends keywords from every rule whose pattern matches the question."""

    def __init__(self, rules: Optional[Sequence[ExpansionRule]] = None):
        self.rules = tuple(DEFAULT_RULES if rules is None else rules)

    @classmethod
    def from_file(cls, path: str) -> "QueryExpander":
        """Load rules from a JSON list of ``{name, pattern, keywords}`` objects."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            rules = [
                ExpansionRule.compile(
                    str(item.get("name") or f"rule_{i}"),
                    item["pattern"],
                    [str(k) for k in item.get("keywords", [])],
                )
                for i, item in enumerate(raw)
            ]
        except (OSError, ValueError, KeyError, TypeError, AttributeError, re.error) as e:
            raise ConfigurationError(f"Invalid query expansion rules in {path}: {e}") from e

        logger.info("Loaded query expansion rules", path=path, rules=len(rules))
        return cls(rules)

    def expansion_terms(self, question: str) -> List[str]:
        """Keywords the question would gain, de-duplicated, in rule order."""
        question_words = set(question.lower().split()) | set(tokenize(question))
        terms: List[str] = []
        seen = set()
        for rule in self.rules:
            if not rule.matches(question):
                continue
            for keyword in rule.keywords:
                key = keyword.lower()
                if key in seen or key in question_words:
                    continue
                seen.add(key)
                terms.append(keyword)
        return terms

    def expand(self, question: str) -> str:
        """Return ``question`` with any matching rule keywords appended."""
        terms = self.expansion_terms(question)
        if not terms:
            return question

        expanded = f"{question} {' '.join(terms)}"
        logger.debug("Query expanded", added_terms=len(terms), expanded=expanded[:120])
        return expanded
