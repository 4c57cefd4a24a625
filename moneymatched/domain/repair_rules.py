"""Pre-parse Repair Rules for Known Source Corruption.

The state's published CSV files contain a handful of recurring, mechanically
recognizable corruptions (mostly zip codes mangled by a broken quoting step on
the publisher's side). They are fixed textually, line by line, before the CSV
tokenizer sees the data.

Rules are an explicit, ordered list. Each rule is a compiled regular expression
and its replacement; they are applied in list order, so a later rule sees the
output of earlier ones. Adding a rule means appending to REPAIR_RULES and bumping
REPAIR_RULES_VERSION.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Sequence

REPAIR_RULES_VERSION = "2"


@dataclass(frozen=True)
class RepairRule:
    """A single (pattern, replacement) fixup.

    Attributes:
        name: Stable identifier used in logs and tests
        pattern: Regular expression matched against one physical line
        replacement: re.sub replacement template
        description: What corruption the rule undoes
    """
    name: str
    pattern: str
    replacement: str
    description: str = ""
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", re.compile(self.pattern))

    def apply(self, text: str) -> str:
        return self._compiled.sub(self.replacement, text)


REPAIR_RULES: tuple[RepairRule, ...] = (
    RepairRule(
        name="doubled-open-quote-before-digits",
        pattern=r',""(\d+)',
        replacement=r',"\1',
        description='Opening quote doubled in front of a zip code: ,""9520 -> ,"9520',
    ),
    RepairRule(
        name="split-zero-prefixed-zip",
        pattern=r',"00"(\d{2})',
        replacement=r',"00\1',
        description='Stray quote inside a zero-prefixed zip code: ,"00"95 -> ,"0095',
    ),
)


def apply_repairs(text: str, rules: Sequence[RepairRule] = REPAIR_RULES) -> str:
    """Apply every rule to text, in order."""
    for rule in rules:
        text = rule.apply(text)
    return text


def repair_lines(lines: Iterable[str], rules: Sequence[RepairRule] = REPAIR_RULES) -> Iterable[str]:
    """Lazily apply the rules to each line of a stream."""
    if not rules:
        yield from lines
        return
    for line in lines:
        yield apply_repairs(line, rules)
