"""
Event clauses: which events go to which destinations.

A clause pairs a predicate over the event fields with an ordered set of
destination ids. An event is sent to the union of the destinations of every
clause it matches. The active clauses live in an immutable :class:`RuleSet`
which :meth:`RuleEngine.load` replaces in one assignment, so an evaluation
always sees a complete rule set.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, Mapping, Optional, Tuple

from amigate.errors import ConfigurationError, RuleEvaluationError
from amigate.models import Event
from amigate.stats import RuleStats


class Predicate:
    def __call__(self, fields: Mapping[str, str]) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Equals(Predicate):
    field: str
    value: str

    def __call__(self, fields):
        return fields.get(self.field) == self.value


@dataclass(frozen=True)
class Regex(Predicate):
    """Matches when the pattern is found anywhere in the field (``re.search``)."""
    field: str
    pattern: str
    _compiled: Any = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            object.__setattr__(self, '_compiled', re.compile(self.pattern))
        except re.error as e:
            raise ConfigurationError(f"Bad regex {self.pattern!r} for {self.field}: {e}")

    def __call__(self, fields):
        value = fields.get(self.field)
        return value is not None and self._compiled.search(value) is not None


@dataclass(frozen=True)
class Exists(Predicate):
    field: str

    def __call__(self, fields):
        return self.field in fields


@dataclass(frozen=True)
class AllOf(Predicate):
    children: Tuple[Predicate, ...]

    def __call__(self, fields):
        return all(child(fields) for child in self.children)


@dataclass(frozen=True)
class AnyOf(Predicate):
    children: Tuple[Predicate, ...]

    def __call__(self, fields):
        return any(child(fields) for child in self.children)


@dataclass(frozen=True)
class Not(Predicate):
    child: Predicate

    def __call__(self, fields):
        return not self.child(fields)


def build_predicate(data: Mapping[str, Any]) -> Predicate:
    """
    Builds a predicate tree from its configuration form.

    Accepted forms::

        {"event": "Hangup"}                       # shortcut for Event == Hangup
        {"field": "Channel", "equals": "SIP/100"}
        {"field": "Channel", "regex": "^SIP/"}
        {"field": "Uniqueid", "exists": true}
        {"all": [...]}, {"any": [...]}, {"not": {...}}

    :raises ConfigurationError: Unknown or incomplete predicate
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Predicate must be a mapping, got {data!r}")
    if 'all' in data or 'any' in data:
        key = 'all' if 'all' in data else 'any'
        children = data[key]
        if not isinstance(children, (list, tuple)) or not children:
            raise ConfigurationError(f"'{key}' needs a non empty list of predicates")
        built = tuple(build_predicate(child) for child in children)
        return AllOf(built) if key == 'all' else AnyOf(built)
    if 'not' in data:
        return Not(build_predicate(data['not']))
    if 'event' in data:
        return Equals('Event', str(data['event']))
    name = data.get('field')
    if not name:
        raise ConfigurationError(f"Predicate without field: {dict(data)!r}")
    if 'equals' in data:
        return Equals(name, str(data['equals']))
    if 'regex' in data:
        return Regex(name, str(data['regex']))
    if 'exists' in data:
        exists = Exists(name)
        return exists if data['exists'] else Not(exists)
    raise ConfigurationError(f"Predicate for {name} needs one of equals, regex, exists")


@dataclass(frozen=True)
class EventClause:
    name: str
    predicate: Predicate
    destinations: Tuple[str, ...]

    def __post_init__(self):
        destinations = tuple(dict.fromkeys(self.destinations))
        if not destinations:
            raise ConfigurationError(f"Clause {self.name!r} has no destinations")
        object.__setattr__(self, 'destinations', destinations)

    def matches(self, fields: Mapping[str, str]) -> bool:
        return self.predicate(fields)


@dataclass(frozen=True)
class RuleSet:
    clauses: Tuple[EventClause, ...] = ()
    version: int = 0

    @property
    def destinations(self) -> FrozenSet[str]:
        return frozenset(d for clause in self.clauses for d in clause.destinations)


def make_clause(data: Mapping[str, Any]) -> EventClause:
    """Builds a clause from ``{name, match, destinations}``."""
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Clause must be a mapping, got {data!r}")
    name = data.get('name')
    if not name:
        raise ConfigurationError(f"Clause without name: {dict(data)!r}")
    match = data.get('match')
    if match is None and 'event' in data:
        match = {'event': data['event']}
    if match is None:
        raise ConfigurationError(f"Clause {name!r} has no match")
    destinations = data.get('destinations') or ()
    if isinstance(destinations, str):
        destinations = (destinations,)
    return EventClause(name, build_predicate(match), tuple(destinations))


def check_clauses(clauses: Iterable[EventClause], known_destinations: Optional[Iterable[str]] = None) -> Tuple[EventClause, ...]:
    """
    Checks that clause names are unique and, when ``known_destinations`` is
    given, that every referenced destination exists.

    :raises ConfigurationError: The clauses cannot be loaded
    """
    clauses = tuple(clauses)
    names = set()
    for clause in clauses:
        if clause.name in names:
            raise ConfigurationError(f"Duplicate clause name {clause.name!r}")
        names.add(clause.name)
        if not clause.destinations:
            raise ConfigurationError(f"Clause {clause.name!r} has no destinations")
    if known_destinations is not None:
        known = set(known_destinations)
        for clause in clauses:
            unknown = [d for d in clause.destinations if d not in known]
            if unknown:
                raise ConfigurationError(f"Clause {clause.name!r} references unknown destinations {unknown}")
    return clauses


class RuleEngine:
    def __init__(self, clauses: Iterable[EventClause] = (), known_destinations: Optional[Iterable[str]] = None):
        self.logger = logging.getLogger('Rule Engine')
        self._ruleset = RuleSet()
        self.evaluated = 0
        self.matched = 0
        self.unmatched = 0
        self.errors = 0
        self.load(clauses, known_destinations)

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    def load(self, clauses: Iterable[EventClause], known_destinations: Optional[Iterable[str]] = None) -> RuleSet:
        """
        Validates ``clauses`` and makes them the active rule set.

        :param clauses: The new clauses, evaluated in this order
        :param known_destinations: When given, every referenced destination must be in it
        :return: The new rule set
        :raises ConfigurationError: Duplicate clause names or unknown destinations.
            The active rule set is left untouched.
        """
        clauses = check_clauses(clauses, known_destinations)
        ruleset = RuleSet(clauses, self._ruleset.version + 1)
        self._ruleset = ruleset
        self.logger.info(f"Loaded {len(clauses)} clause(s), version {ruleset.version}")
        return ruleset

    def evaluate(self, event: Event) -> FrozenSet[str]:
        """
        Returns the union of the destinations of every matching clause.

        :raises RuleEvaluationError: A predicate raised; the event should be skipped
        """
        ruleset = self._ruleset
        fields = event.fields
        result = set()
        self.evaluated += 1
        for clause in ruleset.clauses:
            try:
                matched = clause.matches(fields)
            except Exception as e:
                self.errors += 1
                raise RuleEvaluationError(f"Clause {clause.name!r} failed on {event!r}: {e!r}") from e
            if matched:
                result.update(clause.destinations)
        if result:
            self.matched += 1
        else:
            self.unmatched += 1
        return frozenset(result)

    def stats(self) -> RuleStats:
        return RuleStats(
            version=self._ruleset.version,
            clauses=len(self._ruleset.clauses),
            evaluated=self.evaluated,
            matched=self.matched,
            unmatched=self.unmatched,
            errors=self.errors,
        )
