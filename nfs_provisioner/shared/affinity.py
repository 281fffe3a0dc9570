# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import Enum, unique
from typing import Optional

# ---------------------------------------------------------------------------- #


@unique
class NodeAffinityOperator(Enum):
    EXISTS = "Exists"
    IN = "In"


@dataclass(frozen=True)
class NodeAffinityRule:
    key: str
    operator: NodeAffinityOperator
    values: tuple[str, ...] = ()

    def to_match_expression(self) -> dict[str, object]:
        """Return the rule as a Kubernetes NodeSelectorRequirement."""

        expression: dict[str, object] = {
            "key": self.key,
            "operator": self.operator.value,
        }

        if self.values:
            expression["values"] = list(self.values)

        return expression


# ---------------------------------------------------------------------------- #


def parse_node_affinity(value: str) -> list[NodeAffinityRule]:
    """
    Parse a comma-separated list of node-affinity terms.

    Each term is either a bare label key, which becomes an `Exists` rule, or
    `key:[v1,v2,...]`, which becomes an `In` rule over the listed values. An
    empty value list, as in `key:[]`, also becomes an `Exists` rule. Commas
    inside brackets separate values, not terms.

    Example: "kubernetes.io/zone:[zone-a,zone-b],kubernetes.io/nfs-node" yields
    `In(kubernetes.io/zone, [zone-a, zone-b])` followed by
    `Exists(kubernetes.io/nfs-node)`.

    Rules are returned in input order and are all ANDed together when applied.
    Empty terms and empty values are silently dropped.
    """

    return [
        rule for term in _split_terms(value) if (rule := _parse_term(term))
    ]


def node_affinity_selector(rules: Sequence[NodeAffinityRule]) -> str:
    """Render the rules as a Kubernetes label selector string."""

    def render(rule: NodeAffinityRule) -> str:
        if rule.operator is NodeAffinityOperator.IN:
            return f"{rule.key} in ({','.join(rule.values)})"
        else:
            return rule.key

    return ",".join(map(render, rules))


# ---------------------------------------------------------------------------- #


def _split_terms(value: str) -> Iterator[str]:
    """Split on commas that are not inside a bracketed value list."""

    depth = 0
    start = 0

    for (i, char) in enumerate(value):
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(depth - 1, 0)
        elif char == "," and depth == 0:
            yield value[start:i]
            start = i + 1

    yield value[start:]


def _parse_term(term: str) -> Optional[NodeAffinityRule]:

    (key, colon, raw_values) = term.partition(":")
    key = key.strip()

    if not key:
        return None  # lenient: drop empty terms

    values = tuple(
        v for v in (s.strip() for s in _strip_brackets(raw_values).split(","))
        if v
    )

    if colon and values:
        return NodeAffinityRule(
            key=key, operator=NodeAffinityOperator.IN, values=values
        )
    else:
        return NodeAffinityRule(key=key, operator=NodeAffinityOperator.EXISTS)


def _strip_brackets(raw_values: str) -> str:

    raw_values = raw_values.strip()

    if raw_values.startswith("["):
        raw_values = raw_values[1:]

    if raw_values.endswith("]"):
        raw_values = raw_values[:-1]

    return raw_values


# ---------------------------------------------------------------------------- #
