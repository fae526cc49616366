from __future__ import annotations

"""
Rule-based release filtering.

Rules are evaluated highest priority first and the first accept/reject rule
that matches gets the final word. If nobody speaks up, the answer is no.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple

from .config import ConfigError
from .models import ReleaseCandidate, TrackedShow

MIN_RESOLUTION_TOKEN = "$min_resolution"


class Field(str, Enum):
    TITLE = "title"
    SHOW = "show"
    GROUP = "group"
    RESOLUTION = "resolution"
    EPISODE = "episode"
    SEASON = "season"
    ORIGIN = "origin"
    KIND = "kind"
    EXTRAS = "extras"


NUMERIC_FIELDS = frozenset({Field.RESOLUTION, Field.EPISODE, Field.SEASON})


class Operator(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"
    AT_LEAST = "at_least"
    LESS_THAN = "less_than"
    MATCHES_SHOW = "matches_show"


TEXT_OPERATORS = frozenset({Operator.EXACT, Operator.CONTAINS, Operator.REGEX})
NUMERIC_OPERATORS = frozenset({Operator.AT_LEAST, Operator.LESS_THAN})


class Action(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    PREFER = "prefer"


@dataclass(frozen=True)
class Predicate:
    """``field operator pattern``, e.g. ``resolution at_least 1080``."""

    field: Field
    operator: Operator
    pattern: str = ""

    def validate(self) -> None:
        """
        Reject predicates that could never be evaluated.

        Raises
        ------
        ConfigError
            On numeric operators over text fields, non-numeric thresholds, or
            regexes that do not compile.
        """

        if self.operator in NUMERIC_OPERATORS:
            if self.field not in NUMERIC_FIELDS:
                raise ConfigError(f"{self.operator.value} needs a numeric field, got {self.field.value}")
            if self.pattern != MIN_RESOLUTION_TOKEN:
                try:
                    int(self.pattern)
                except ValueError as exc:
                    raise ConfigError(f"Numeric pattern expected, got {self.pattern!r}") from exc
        elif self.operator is Operator.REGEX:
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ConfigError(f"Invalid regex {self.pattern!r}: {exc}") from exc
        elif self.operator in TEXT_OPERATORS and not self.pattern:
            raise ConfigError(f"{self.operator.value} needs a pattern")

    def describe(self) -> str:
        if self.operator is Operator.MATCHES_SHOW:
            return "show matches tracked show"
        return f"{self.field.value} {self.operator.value} {self.pattern!r}"


@dataclass
class FilterRule:
    """
    A predicate plus what to do when it matches.

    ``show_id`` of ``None`` makes the rule global; otherwise it is an override
    for that show. An override with ``disables`` set and no predicate switches
    a global rule off for its show.
    """

    name: str
    action: Action
    predicate: Optional[Predicate] = None
    priority: int = 0
    show_id: Optional[int] = None
    negate: bool = False
    enabled: bool = True
    disables: Optional[int] = None
    rule_id: Optional[int] = None

    @property
    def is_override(self) -> bool:
        return self.show_id is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any], show_id: Optional[int] = None) -> "FilterRule":
        """
        Build and validate a rule from a config/JSON definition.

        Parameters
        ----------
        data : dict[str, Any]
            Keys: ``name``, ``field``, ``operator``, ``pattern``, ``action``,
            ``priority``, ``negate``, ``enabled``, ``disables``.
        show_id : int, optional
            Scope the rule to a single show.

        Raises
        ------
        ConfigError
            If anything about the definition is off. Only this rule is lost.
        """

        name = str(data.get("name") or "").strip()
        if not name:
            raise ConfigError("Filter rule is missing a name")
        try:
            action = Action(str(data.get("action", "accept")).lower())
        except ValueError as exc:
            raise ConfigError(f"Rule {name!r}: unknown action {data.get('action')!r}") from exc
        try:
            priority = int(data.get("priority", 0))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Rule {name!r}: priority must be an integer") from exc

        disables = data.get("disables")
        predicate = None
        if data.get("operator") is not None or data.get("field") is not None:
            try:
                operator = Operator(str(data.get("operator", "contains")).lower())
                field_ = Field(str(data.get("field", "title")).lower())
            except ValueError as exc:
                raise ConfigError(f"Rule {name!r}: {exc}") from exc
            predicate = Predicate(field=field_, operator=operator, pattern=str(data.get("pattern", "")))
            predicate.validate()
        elif disables is None:
            raise ConfigError(f"Rule {name!r} has neither a predicate nor a rule to disable")

        if disables is not None:
            if show_id is None:
                raise ConfigError(f"Rule {name!r}: only show overrides can disable rules")
            try:
                disables = int(disables)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Rule {name!r}: cannot disable {disables!r}") from exc

        return cls(
            name=name,
            action=action,
            predicate=predicate,
            priority=priority,
            show_id=show_id,
            negate=bool(data.get("negate", False)),
            enabled=bool(data.get("enabled", True)),
            disables=disables,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "action": self.action.value,
            "priority": self.priority,
            "negate": self.negate,
            "enabled": self.enabled,
        }
        if self.predicate is not None:
            data.update(
                field=self.predicate.field.value,
                operator=self.predicate.operator.value,
                pattern=self.predicate.pattern,
            )
        if self.disables is not None:
            data["disables"] = self.disables
        return data


@dataclass(frozen=True)
class Decision:
    accepted: bool
    reason: str
    rule: Optional[str] = None
    score: int = 0
    matched: Tuple[str, ...] = ()

    @classmethod
    def accept(cls, rule: str, score: int = 0, matched: Tuple[str, ...] = ()) -> "Decision":
        return cls(True, f"accepted by {rule!r}", rule, score, matched)

    @classmethod
    def reject(cls, reason: str, rule: Optional[str] = None, score: int = 0, matched: Tuple[str, ...] = ()) -> "Decision":
        return cls(False, reason, rule, score, matched)


def _field_value(candidate: ReleaseCandidate, field_: Field):
    if field_ is Field.TITLE:
        return candidate.title
    if field_ is Field.SHOW:
        return candidate.show_guess
    if field_ is Field.GROUP:
        return candidate.group
    if field_ is Field.RESOLUTION:
        return candidate.resolution
    if field_ is Field.EPISODE:
        return candidate.episode
    if field_ is Field.SEASON:
        return candidate.season
    if field_ is Field.ORIGIN:
        return candidate.origin
    if field_ is Field.KIND:
        return candidate.kind.value
    if field_ is Field.EXTRAS:
        return " ".join(candidate.extras)
    raise ValueError(f"Unhandled field: {field_!r}")


def predicate_matches(
    predicate: Predicate,
    candidate: ReleaseCandidate,
    show: TrackedShow,
    min_resolution: int,
) -> bool:
    """
    Evaluate one predicate. Every operator is handled here and nowhere else.

    Unknown numeric values (no resolution in the title, say) never satisfy a
    numeric comparison in either direction.
    """

    operator = predicate.operator
    if operator is Operator.MATCHES_SHOW:
        return show.matches(candidate.show_guess, candidate.season)

    value = _field_value(candidate, predicate.field)

    if operator in NUMERIC_OPERATORS:
        if value is None:
            return False
        if predicate.pattern == MIN_RESOLUTION_TOKEN:
            threshold = show.min_resolution or min_resolution
        else:
            threshold = int(predicate.pattern)
        if operator is Operator.AT_LEAST:
            return int(value) >= threshold
        return int(value) < threshold

    text = "" if value is None else str(value)
    if operator is Operator.EXACT:
        return text.casefold() == predicate.pattern.casefold()
    if operator is Operator.CONTAINS:
        return predicate.pattern.casefold() in text.casefold()
    if operator is Operator.REGEX:
        return re.search(predicate.pattern, text, re.IGNORECASE) is not None
    raise ValueError(f"Unhandled operator: {operator!r}")


class FilterEngine:
    """Evaluates a rule set against candidates. Holds no state besides the rules."""

    def __init__(self, rules: Iterable[FilterRule]):
        self.rules: List[FilterRule] = list(rules)

    def rules_for(self, show: TrackedShow) -> List[FilterRule]:
        """
        Applicable rules for ``show`` in evaluation order.

        Priority descending; on equal priority the show's overrides come before
        global rules; otherwise insertion order holds (``sorted`` is stable).
        """

        disabled = {
            rule.disables
            for rule in self.rules
            if rule.show_id == show.show_id and rule.disables is not None and rule.enabled
        }
        applicable = [
            rule
            for rule in self.rules
            if rule.enabled
            and rule.predicate is not None
            and (rule.show_id is None or rule.show_id == show.show_id)
            and not (rule.show_id is None and rule.rule_id is not None and rule.rule_id in disabled)
        ]
        return sorted(applicable, key=lambda rule: (-rule.priority, 0 if rule.is_override else 1))

    def evaluate(
        self,
        candidate: ReleaseCandidate,
        show: TrackedShow,
        min_resolution: int = 1080,
    ) -> Decision:
        """
        Decide whether ``candidate`` is acceptable for ``show``.

        Parameters
        ----------
        candidate : ReleaseCandidate
            The parsed release.
        show : TrackedShow
            The show it is being considered for.
        min_resolution : int
            Tracker-wide minimum, used when the show sets none.

        Returns
        -------
        Decision
            Accept or reject, with the deciding rule and any prefer points
            collected on the way.
        """

        score = 0
        matched: List[str] = []
        for rule in self.rules_for(show):
            hit = predicate_matches(rule.predicate, candidate, show, min_resolution)
            if rule.negate:
                hit = not hit
            if not hit:
                continue
            if rule.action is Action.PREFER:
                points = max(rule.priority, 1)
                score += points
                matched.append(f"{rule.name} (+{points})")
                continue
            matched.append(rule.name)
            if rule.action is Action.ACCEPT:
                return Decision.accept(rule.name, score, tuple(matched))
            if rule.action is Action.REJECT:
                logging.debug("Rejected %r by rule %r (%s)", candidate.title, rule.name, rule.predicate.describe())
                return Decision.reject(f"rejected by {rule.name!r}", rule.name, score, tuple(matched))
            raise ValueError(f"Unhandled action: {rule.action!r}")

        return Decision.reject("no rule matched", None, score, tuple(matched))

    def accepted(
        self,
        candidates: Iterable[ReleaseCandidate],
        show: TrackedShow,
        min_resolution: int = 1080,
    ) -> List[Tuple[ReleaseCandidate, Decision]]:
        results = []
        for candidate in candidates:
            decision = self.evaluate(candidate, show, min_resolution)
            if decision.accepted:
                results.append((candidate, decision))
        return results


def default_rules() -> List[FilterRule]:
    """
    The out-of-the-box rule set.

    Without these nothing would ever be accepted, which is safe but not
    terribly useful.
    """

    return [
        FilterRule(
            name="Exclude batches",
            action=Action.REJECT,
            predicate=Predicate(Field.TITLE, Operator.REGEX, r"\bbatch\b"),
            priority=100,
        ),
        FilterRule(
            name="Exclude other shows",
            action=Action.REJECT,
            predicate=Predicate(Field.SHOW, Operator.MATCHES_SHOW),
            priority=90,
            negate=True,
        ),
        FilterRule(
            name="Exclude below minimum resolution",
            action=Action.REJECT,
            predicate=Predicate(Field.RESOLUTION, Operator.LESS_THAN, MIN_RESOLUTION_TOKEN),
            priority=80,
        ),
        FilterRule(
            name="Accept tracked show at minimum resolution",
            action=Action.ACCEPT,
            predicate=Predicate(Field.RESOLUTION, Operator.AT_LEAST, MIN_RESOLUTION_TOKEN),
            priority=0,
        ),
    ]
