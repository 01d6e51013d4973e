"""
scan-orchestrator — test suite for the failure classifier.

File: tests/unit/control_plane/test_classifier.py
Last updated: 2026-10-17

Purpose
- Validate ordered rule evaluation, cause-chain traversal, text classification and
  determinism of the five-class taxonomy.
"""

from __future__ import annotations

import errno
import subprocess

import pytest

from scan_orchestrator.control_plane.classifier import (
    ClassificationRule,
    FailureClassifier,
    classify,
    classify_message,
    iter_chain,
    message_rule,
)
from scan_orchestrator.domain.errors import (
    DeploymentFailureError,
    InsufficientSpaceError,
    NetworkFailureError,
    StepFailure,
    StorageFailureError,
)
from scan_orchestrator.domain.models import FailureClass
from scan_orchestrator.integration_plane.git_engine import GitCommandError


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (StorageFailureError("/ws", "read-only"), FailureClass.STORAGE),
        (NetworkFailureError("git", "reset"), FailureClass.NETWORK),
        (InsufficientSpaceError(1, 2), FailureClass.RESOURCE),
        (DeploymentFailureError("missing_binary", "gitleaks"), FailureClass.DEPLOYMENT),
        (OSError(errno.EROFS, "Read-only file system"), FailureClass.STORAGE),
        (OSError(errno.ENOSPC, "No space left on device"), FailureClass.STORAGE),
        (MemoryError(), FailureClass.RESOURCE),
        (subprocess.TimeoutExpired(["gitleaks"], 5), FailureClass.RESOURCE),
        (ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"), FailureClass.NETWORK),
        (RuntimeError("process exited: OOM killed"), FailureClass.RESOURCE),
        (RuntimeError("sh: gitleaks: command not found"), FailureClass.DEPLOYMENT),
        (ValueError("unexpected token in report"), FailureClass.APPLICATION),
    ],
)
def test_default_classification(exc: BaseException, expected: FailureClass) -> None:
    assert classify(exc) is expected


def test_git_stderr_is_inspected() -> None:
    exc = GitCommandError(
        command=("git", "clone", "https://example.invalid/repo.git"),
        returncode=128,
        stdout="",
        stderr="fatal: unable to access 'https://example.invalid/repo.git/': "
        "Could not resolve host: example.invalid",
    )

    assert classify(exc) is FailureClass.NETWORK


def test_cause_chain_is_followed() -> None:
    try:
        try:
            raise OSError(errno.EIO, "Input/output error")
        except OSError as inner:
            raise RuntimeError("clone failed") from inner
    except RuntimeError as outer:
        assert classify(outer) is FailureClass.STORAGE


def test_step_failure_classifies_by_its_cause() -> None:
    failure = StepFailure(
        "provision", 3, NetworkFailureError("git", "timeout"), retries_exhausted=True
    )

    assert classify(failure) is FailureClass.NETWORK
    assert [type(item).__name__ for item in iter_chain(failure)] == [
        "StepFailure",
        "NetworkFailureError",
    ]


def test_typed_deployment_wins_over_wrapped_storage_error() -> None:
    try:
        try:
            raise OSError(errno.EACCES, "Permission denied")
        except OSError as inner:
            raise DeploymentFailureError("workspace_root", "not writable") from inner
    except DeploymentFailureError as outer:
        assert classify(outer) is FailureClass.DEPLOYMENT


def test_ssh_publickey_denial_is_not_a_storage_failure() -> None:
    exc = GitCommandError(
        command=("git", "clone", "git@github.com:acme/payments.git", "repo"),
        returncode=128,
        stdout="",
        stderr=(
            "git@github.com: Permission denied (publickey).\n"
            "fatal: Could not read from remote repository."
        ),
    )

    explained = FailureClassifier().explain(exc)

    assert explained.failure_class is FailureClass.APPLICATION
    assert explained.rule == "fallback"
    assert classify_message(exc.stderr) is FailureClass.APPLICATION


def test_permission_denied_os_error_is_storage() -> None:
    assert classify(OSError(errno.EACCES, "Permission denied")) is FailureClass.STORAGE
    assert classify(PermissionError("[Errno 13] Permission denied: '/mnt/ws'")) is (
        FailureClass.STORAGE
    )


def test_iter_chain_handles_cycles() -> None:
    first = RuntimeError("first")
    second = RuntimeError("second")
    first.__cause__ = second
    second.__cause__ = first

    assert list(iter_chain(first)) == [first, second]


def test_explain_names_the_matching_rule() -> None:
    classifier = FailureClassifier()

    assert classifier.explain(OSError(errno.ESTALE, "stale")).rule == "storage-errno"
    fallback = classifier.explain(KeyError("missing"))
    assert fallback.rule == "fallback"
    assert fallback.failure_class is FailureClass.APPLICATION


def test_prepended_rule_takes_precedence() -> None:
    custom = message_rule("quota", (r"quota exceeded",), FailureClass.STORAGE)
    classifier = FailureClassifier().with_rules(prepend=[custom])

    exc = RuntimeError("api quota exceeded: connection reset")

    assert classify(exc) is FailureClass.NETWORK
    assert classifier.classify(exc) is FailureClass.STORAGE
    assert classifier.rules[0].name == "quota"


def test_rule_names_must_be_unique() -> None:
    rule = ClassificationRule("dup", lambda exc: False, FailureClass.NETWORK)

    with pytest.raises(ValueError, match="unique"):
        FailureClassifier([rule, rule])


def test_classify_message_uses_text_rules() -> None:
    assert classify_message("fatal: Read-only file system") is FailureClass.STORAGE
    assert classify_message("Killed by signal 9") is FailureClass.RESOURCE
    assert classify_message("fatal: the remote end hung up unexpectedly") is FailureClass.NETWORK
    assert classify_message("everything is fine") is FailureClass.APPLICATION


def test_classification_is_deterministic_for_arbitrary_messages() -> None:
    hypothesis = pytest.importorskip("hypothesis")
    st = pytest.importorskip("hypothesis.strategies")

    @hypothesis.settings(max_examples=200, deadline=None)
    @hypothesis.given(st.text(max_size=200))
    def check(message: str) -> None:
        first = classify(RuntimeError(message))
        second = classify(RuntimeError(message))
        assert first is second
        assert first in set(FailureClass)
        assert classify_message(message) is classify_message(message)

    check()
