"""Tests for rule-based failure classification and error signatures."""

import json

import pytest

from build_failure_monitor.classifier import (
    FailureClassifier,
    RuleTable,
    canonicalize,
    error_signature,
    extract_error_messages,
    load_rule_table,
)
from build_failure_monitor.errors import ClassificationError
from build_failure_monitor.models import FailureType

STACK_TRACE = """Traceback (most recent call last):
  File "tests/test_parser.py", line 18, in test_parse_header
    assert parse_header(raw) == expected
AssertionError: assert {'a': 1} == {'a': 2}"""


class TestClassify:

    def test_timeout_is_infra(self, classifier):
        text = "Error: connect ETIMEDOUT 140.82.112.4:443"
        assert classifier.classify(text) == FailureType.INFRA

    def test_missing_manifest_is_docker(self, classifier):
        text = "docker: manifest for ghcr.io/acme/api:1.4.2 not found: manifest unknown"
        assert classifier.classify(text) == FailureType.DOCKER

    def test_npm_eresolve_is_dependency(self, classifier):
        text = "npm ERR! code ERESOLVE\nnpm ERR! ERESOLVE unable to resolve dependency tree"
        assert classifier.classify(text) == FailureType.DEPENDENCY

    def test_plain_stack_trace_is_test(self, classifier):
        assert classifier.classify(STACK_TRACE) == FailureType.TEST

    def test_first_matching_rule_wins(self, classifier):
        # mentions both a dependency and an infra symptom; dependency is evaluated first
        text = "npm ERR! network request failed, reason: connect ETIMEDOUT"
        assert classifier.classify(text) == FailureType.DEPENDENCY

    def test_failed_step_names_classify(self, classifier):
        assert classifier.classify("build :: Install dependencies failed (failure)") == FailureType.DEPENDENCY
        assert classifier.classify("publish :: Build and push image failed (failure)") == FailureType.DOCKER

    def test_cancelled_workflow_is_infra(self, classifier):
        assert classifier.classify("Workflow 'CI' concluded cancelled") == FailureType.INFRA

    def test_deterministic(self, classifier):
        text = "E   AssertionError: 3 != 4"
        assert classifier.classify(text) == classifier.classify(text)

    def test_empty_text_uses_default(self, classifier):
        assert classifier.classify("") == FailureType.TEST
        assert classifier.classify(None) == FailureType.TEST


class TestRuleTable:

    def test_packaged_table_loads(self):
        table = load_rule_table()
        assert table.version
        assert [rule.failure_type for rule in table.rules] == [
            FailureType.DEPENDENCY,
            FailureType.DOCKER,
            FailureType.INFRA,
        ]

    def test_rule_version_exposed(self):
        classifier = FailureClassifier(RuleTable.from_dict(
            {"version": "v9", "rules": [{"failure_type": "infra", "patterns": ["runner"]}]}
        ))
        assert classifier.rule_version == "v9"
        assert classifier.classify("Runner lost") == FailureType.INFRA

    @pytest.mark.parametrize(
        "data",
        [
            {"rules": [{"failure_type": "infra", "patterns": ["x"]}]},
            {"version": "1", "rules": []},
            {"version": "1", "rules": [{"failure_type": "network", "patterns": ["x"]}]},
            {"version": "1", "rules": [{"failure_type": "infra", "patterns": ["(unclosed"]}]},
            ["not", "a", "table"],
        ],
    )
    def test_invalid_tables_rejected(self, data):
        with pytest.raises(ClassificationError):
            RuleTable.from_dict(data)

    def test_unreadable_file_rejected(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{broken")
        with pytest.raises(ClassificationError):
            load_rule_table(path)

    def test_custom_file_loads(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(
            {"version": "2", "default": "infra", "rules": [{"failure_type": "docker", "patterns": ["oci"]}]}
        ))
        classifier = FailureClassifier(load_rule_table(path))
        assert classifier.classify("OCI runtime create failed") == FailureType.DOCKER
        assert classifier.classify("anything else") == FailureType.INFRA


class TestErrorMessages:

    def test_canonicalize_strips_noise(self):
        raw = "2026-10-15T10:00:01.1234567Z ##[error]\x1b[31mProcess   completed with exit code 1\x1b[0m"
        assert canonicalize(raw) == "Process completed with exit code 1"

    def test_canonicalize_truncates(self):
        assert len(canonicalize("x" * 2000)) == 500

    def test_signature_ignores_volatile_tokens(self):
        first = "Error: container 3f2a9c1d exited after 120s in /tmp/build-123/out"
        second = "Error: container 9b7e4410 exited after 98s in /tmp/build-456/out"
        assert error_signature(first) == error_signature(second)

    def test_signature_distinguishes_messages(self):
        assert error_signature("Error: disk full") != error_signature("Error: permission denied")

    def test_extract_keeps_distinct_error_lines(self):
        log = "\n".join([
            "Run npm test",
            "> widgets@1.0.0 test",
            "FAILED tests/test_a.py::test_one",
            "retry 1/3 failed",
            "retry 2/3 failed",
            "Done",
        ])
        assert extract_error_messages(log) == [
            "FAILED tests/test_a.py::test_one",
            "retry 1/3 failed",
        ]

    def test_extract_respects_limit(self):
        log = "\n".join(f"error: problem {c}" for c in "abcdefgh")
        assert len(extract_error_messages(log, limit=3)) == 3

    def test_extract_falls_back_to_first_line(self):
        assert extract_error_messages("\n  \nWorkflow 'CI' concluded cancelled\n") == [
            "Workflow 'CI' concluded cancelled"
        ]

    def test_extract_empty(self):
        assert extract_error_messages("") == []

    def test_signature_keeps_exit_codes(self):
        assert error_signature("Process completed with exit code 1.") != error_signature(
            "Process completed with exit code 137."
        )
        assert error_signature("retry 1/3 failed") == error_signature("retry 2/3 failed")

    def test_extract_keeps_rule_matching_lines(self, classifier):
        log = "connect ETIMEDOUT 10.0.0.1:443\nError: Process completed with exit code 1."
        assert extract_error_messages(log) == ["Error: Process completed with exit code 1."]
        assert extract_error_messages(log, keep=classifier.matches_rule) == [
            "connect ETIMEDOUT 10.0.0.1:443",
            "Error: Process completed with exit code 1.",
        ]
