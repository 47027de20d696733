"""
Kernel log line classification.

Rules are evaluated top-to-bottom and independently: a line can satisfy any
number of categories (a kswapd lock wait is also a generic blocked task).
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Set


@dataclass(frozen=True)
class EventRule:
    """A category label plus the pattern that selects its lines."""

    category: str
    pattern: Pattern[str]
    description: str = ""
    extractor: Optional[Callable[["re.Match[str]"], str]] = None

    @classmethod
    def substring(cls, category: str, text: str, description: str = "", extractor=None) -> "EventRule":
        """Rule matching a literal, case-sensitive substring."""
        return cls(category, re.compile(re.escape(text)), description, extractor)

    @classmethod
    def regex(
        cls, category: str, expression: str, flags: int = 0, description: str = "", extractor=None
    ) -> "EventRule":
        """Rule matching a regular expression (searched anywhere in the line)."""
        return cls(category, re.compile(expression, flags), description, extractor)

    def match(self, line: str) -> Optional[str]:
        """Return the detail for a matching line, or None if it doesn't match."""
        found = self.pattern.search(line)
        if not found:
            return None
        if self.extractor is None:
            return line
        return self.extractor(found)


def task_name(match: "re.Match[str]") -> str:
    """Extractor returning the blocked task ("kswapd0:1420") when present."""
    found = re.search(r"task\s+(\S+)", match.string)
    return found.group(1) if found else match.group(0)


DEFAULT_RULES: Sequence[EventRule] = (
    EventRule.regex(
        "jbd2_lock_wait",
        r"blocked.*jbd2_log_wait_commit",
        description="Task blocked waiting for a jbd2 journal commit",
    ),
    EventRule.regex(
        "kswapd_blocked",
        r"task kswapd.*blocked",
        description="kswapd stuck while reclaiming memory",
    ),
    EventRule.regex(
        "jbd2_checkpoint",
        r"jbd2.*checkpoint",
        description="jbd2 checkpoint activity",
    ),
    EventRule.regex(
        "blk_update_error",
        r"blk_update_request.*IO error",
        description="Block layer request completed with an I/O error",
    ),
    EventRule.regex(
        "io_error",
        r"IO error|I/O error|read error|write error",
        flags=re.IGNORECASE,
        description="Any I/O error reported by a driver or filesystem",
    ),
    EventRule.regex(
        "blocked_task",
        r"\bblocked\b",
        description="Generic hung/blocked task report",
        extractor=task_name,
    ),
    EventRule.regex(
        "oom_kill",
        r"invoked oom-killer|Out of memory: Kill|oom-kill:",
        description="OOM killer activity",
    ),
    EventRule.substring(
        "page_alloc_failure",
        "page allocation failure",
        description="Atomic/high-order allocation failed",
    ),
    EventRule.regex(
        "panic",
        r"Kernel panic|BUG: unable to handle|general protection fault",
        flags=re.IGNORECASE,
    ),
    EventRule.regex(
        "oops",
        r"BUG:|Oops:|unable to handle kernel",
        flags=re.IGNORECASE,
    ),
)


def rule_categories(rules: Iterable[EventRule] = DEFAULT_RULES) -> List[str]:
    """Distinct categories in rule order."""
    seen: List[str] = []
    for rule in rules:
        if rule.category not in seen:
            seen.append(rule.category)
    return seen


def classify_with_details(line: str, rules: Iterable[EventRule] = DEFAULT_RULES) -> Dict[str, str]:
    """Map each category the line satisfies to its extracted detail.

    When several rules share a category the first matching rule supplies the
    detail; the category still appears only once.
    """
    matched: Dict[str, str] = {}
    for rule in rules:
        if rule.category in matched:
            continue
        detail = rule.match(line)
        if detail is not None:
            matched[rule.category] = detail
    return matched


def classify(line: str, rules: Iterable[EventRule] = DEFAULT_RULES) -> Set[str]:
    """Return the set of categories whose rule matches the line."""
    return set(classify_with_details(line, rules))
