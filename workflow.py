from typing import Dict, FrozenSet, Iterable, Mapping

from errors import InvalidTransition, ValidationError


class StatusMachine:
    """Transition table for a record's `status` field."""

    def __init__(self, kind: str, initial: str, transitions: Mapping[str, Iterable[str]]):
        self.kind = kind
        self.initial = initial
        self.transitions: Dict[str, FrozenSet[str]] = {s: frozenset(t) for s, t in transitions.items()}
        targets = set().union(*self.transitions.values()) if self.transitions else set()
        self.states = frozenset(self.transitions) | targets | {initial}

    def is_terminal(self, status: str) -> bool:
        return not self.transitions.get(status)

    def allowed(self, current: str) -> FrozenSet[str]:
        return self.transitions.get(current, frozenset())

    def check(self, current: str, requested: str) -> None:
        if requested not in self.states:
            raise ValidationError(
                f"Unknown {self.kind} status '{requested}'; expected one of {', '.join(sorted(self.states))}"
            )
        if requested not in self.allowed(current):
            raise InvalidTransition(self.kind, current, requested)
