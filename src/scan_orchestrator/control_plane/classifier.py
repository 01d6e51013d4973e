"""
scan-orchestrator — failure classifier.

File: src/scan_orchestrator/control_plane/classifier.py

Purpose
- Assign exactly one ``FailureClass`` to a raised exception.

Functional requirements
- Rules form an ordered table of ``(name, predicate, failure_class)``; the first
  matching rule wins and the fallback is ``application``.
- Predicates are pure functions of the exception and its cause/context chain.
  They never touch the filesystem, the network or the state store, so the same
  error always classifies the same way, including during replay.
- New signatures are added by prepending or appending rules.
"""

from __future__ import annotations

import re
import subprocess
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Final

from scan_orchestrator.domain.errors import (
    STORAGE_FAILURE_SIGNATURES,
    ApplicationFailureError,
    DeploymentFailureError,
    NetworkFailureError,
    ResourceExhaustionError,
    ScanPipelineError,
    StepFailure,
    StorageFailureError,
    is_storage_os_error,
)
from scan_orchestrator.domain.models import FailureClass

ExceptionPredicate = Callable[[BaseException], bool]
TextPredicate = Callable[[str], bool]

_MAX_CHAIN_DEPTH: Final[int] = 16

RESOURCE_PATTERNS: Final[tuple[str, ...]] = (
    r"out of memory",
    r"cannot allocate memory",
    r"\boom[- ]?killed\b",
    r"\bkilled by signal\b",
    r"\bsignal 9\b",
    r"\bexit (?:code|status) 137\b",
    r"memory limit exceeded",
    r"deadline exceeded",
    r"heartbeat timed out",
)

NETWORK_PATTERNS: Final[tuple[str, ...]] = (
    r"connection refused",
    r"connection reset",
    r"connection timed out",
    r"operation timed out",
    r"could not resolve host",
    r"name or service not known",
    r"temporary failure in name resolution",
    r"network is unreachable",
    r"no route to host",
    r"failed to connect",
    r"unable to access '[^']*'",
    r"the remote end hung up unexpectedly",
    r"early eof",
    r"\btls\b.*handshake",
)

DEPLOYMENT_PATTERNS: Final[tuple[str, ...]] = (
    r"command not found",
    r"executable file not found",
)


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """One entry of the ordered classification table.

    ``text_predicate`` is set for rules that can also be evaluated against plain
    text (``FailureClassifier.classify_message``).
    """

    name: str
    predicate: ExceptionPredicate
    failure_class: FailureClass
    text_predicate: TextPredicate | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("ClassificationRule.name must be a non-empty string")
        object.__setattr__(self, "failure_class", FailureClass(self.failure_class))


@dataclass(frozen=True, slots=True)
class Classification:
    failure_class: FailureClass
    rule: str
    message: str


class FailureClassifier:
    """Ordered-table classifier; the first matching rule decides."""

    def __init__(self, rules: Sequence[ClassificationRule] | None = None) -> None:
        self._rules: tuple[ClassificationRule, ...] = (
            tuple(rules) if rules is not None else default_rules()
        )
        names = [rule.name for rule in self._rules]
        if len(set(names)) != len(names):
            raise ValueError("classification rule names must be unique")

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def with_rules(
        self,
        *,
        prepend: Iterable[ClassificationRule] = (),
        append: Iterable[ClassificationRule] = (),
    ) -> FailureClassifier:
        """Return a classifier with extra rules placed before or after the current table."""

        return FailureClassifier((*prepend, *self._rules, *append))

    def explain(self, exc: BaseException) -> Classification:
        for rule in self._rules:
            if rule.predicate(exc):
                return Classification(rule.failure_class, rule.name, _describe(exc))
        return Classification(FailureClass.APPLICATION, "fallback", _describe(exc))

    def classify(self, exc: BaseException) -> FailureClass:
        return self.explain(exc).failure_class

    def classify_message(self, text: str) -> FailureClass:
        """Classify plain text (for example a tool's stderr) with the text-capable rules."""

        lowered = text.lower()
        for rule in self._rules:
            if rule.text_predicate is not None and rule.text_predicate(lowered):
                return rule.failure_class
        return FailureClass.APPLICATION


def default_rules() -> tuple[ClassificationRule, ...]:
    return (
        ClassificationRule(
            "typed-deployment", _chain_has(DeploymentFailureError), FailureClass.DEPLOYMENT
        ),
        ClassificationRule("typed-storage", _chain_has(StorageFailureError), FailureClass.STORAGE),
        ClassificationRule("typed-network", _chain_has(NetworkFailureError), FailureClass.NETWORK),
        ClassificationRule(
            "typed-resource", _chain_has(ResourceExhaustionError), FailureClass.RESOURCE
        ),
        ClassificationRule(
            "typed-application", _chain_has(ApplicationFailureError), FailureClass.APPLICATION
        ),
        ClassificationRule("storage-errno", _has_storage_errno, FailureClass.STORAGE),
        message_rule("storage-signature", _signature_patterns(), FailureClass.STORAGE),
        ClassificationRule(
            "resource-type",
            _chain_has(MemoryError, TimeoutError, subprocess.TimeoutExpired),
            FailureClass.RESOURCE,
        ),
        message_rule("resource-signature", RESOURCE_PATTERNS, FailureClass.RESOURCE),
        ClassificationRule("network-type", _chain_has(ConnectionError), FailureClass.NETWORK),
        message_rule("network-signature", NETWORK_PATTERNS, FailureClass.NETWORK),
        message_rule("deployment-signature", DEPLOYMENT_PATTERNS, FailureClass.DEPLOYMENT),
    )


def message_rule(
    name: str,
    patterns: Sequence[str],
    failure_class: FailureClass,
) -> ClassificationRule:
    """Build a rule matching any of ``patterns`` (case-insensitive regexes) in messages."""

    compiled = tuple(re.compile(pattern, re.IGNORECASE | re.MULTILINE) for pattern in patterns)

    def matches_text(text: str) -> bool:
        return any(pattern.search(text) for pattern in compiled)

    def matches_exception(exc: BaseException) -> bool:
        return any(matches_text(_describe(item)) for item in iter_chain(exc))

    return ClassificationRule(name, matches_exception, failure_class, matches_text)


def iter_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` and the exceptions it wraps, each at most once."""

    seen: set[int] = set()
    pending: list[BaseException] = [exc]
    while pending and len(seen) < _MAX_CHAIN_DEPTH:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, StepFailure):
            pending.append(current.cause)
        if current.__cause__ is not None:
            pending.append(current.__cause__)
        if current.__context__ is not None and not current.__suppress_context__:
            pending.append(current.__context__)


def _chain_has(*types: type[BaseException]) -> ExceptionPredicate:
    def predicate(exc: BaseException) -> bool:
        return any(
            isinstance(item, types) and not isinstance(item, StepFailure)
            for item in iter_chain(exc)
        )

    return predicate


def _has_storage_errno(exc: BaseException) -> bool:
    return any(
        isinstance(item, OSError) and is_storage_os_error(item) for item in iter_chain(exc)
    )


def _signature_patterns() -> tuple[str, ...]:
    return tuple(re.escape(signature) for signature in STORAGE_FAILURE_SIGNATURES)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, ScanPipelineError):
        return exc.message
    text = str(exc)
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    if isinstance(stderr, str) and stderr and stderr not in text:
        text = f"{text}\n{stderr}"
    return text or type(exc).__name__


_DEFAULT_CLASSIFIER = FailureClassifier()


def classify(exc: BaseException) -> FailureClass:
    return _DEFAULT_CLASSIFIER.classify(exc)


def classify_message(text: str) -> FailureClass:
    return _DEFAULT_CLASSIFIER.classify_message(text)


__all__ = [
    "Classification",
    "ClassificationRule",
    "DEPLOYMENT_PATTERNS",
    "FailureClassifier",
    "NETWORK_PATTERNS",
    "RESOURCE_PATTERNS",
    "classify",
    "classify_message",
    "default_rules",
    "iter_chain",
    "message_rule",
]
