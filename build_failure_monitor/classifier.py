"""
Failure Classifier

Rule-based classification of failed build output into test, dependency, docker
or infra failures, plus the error-message canonicalization used to deduplicate
failures.

Rules live in a versioned JSON table (see ``data/failure_rules.json``). They are
evaluated in order against the lower-cased text and the first match wins.
Classification is deterministic for a given table version.
"""
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from build_failure_monitor import config
from build_failure_monitor.errors import ClassificationError
from build_failure_monitor.models import FailureType

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
LEADING_TIMESTAMP = re.compile(
    r"^\s*\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:?\d{2})?\s*"
)
ACTIONS_COMMAND = re.compile(r"^\s*##\[(error|warning|group|endgroup)\]\s*", re.IGNORECASE)
ERROR_MARKER = re.compile(
    r"(\berror\b|err!|\bfailed\b|\bfailure\b|exception|\bfatal\b|traceback|assertion)",
    re.IGNORECASE,
)

# Tokens that differ between occurrences of the same failure
VOLATILE_TOKENS = [
    (re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "<uuid>"),
    (re.compile(r"\b[0-9a-f]{7,64}\b"), "<hex>"),
    (re.compile(r"(/tmp|/var/folders|/home/runner/work/_temp)/\S*"), "<tmp>"),
    # exit, status and signal codes tell failures apart, so they stay
    (
        re.compile(r"(?<![\d.])(?<!code )(?<!code: )(?<!code=)(?<!status )(?<!signal )\d+(\.\d+)*"),
        "<n>",
    ),
]


class Rule:
    def __init__(self, failure_type, patterns):
        self.failure_type = failure_type
        self.patterns = patterns

    def matches(self, text):
        return any(p.search(text) for p in self.patterns)


class RuleTable:
    """An ordered, versioned set of classification rules."""

    def __init__(self, version, rules, default=FailureType.TEST):
        self.version = version
        self.rules = rules
        self.default = default

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ClassificationError("Rule table must be a JSON object")
        version = data.get("version")
        if not version:
            raise ClassificationError("Rule table is missing a version")
        default = data.get("default", FailureType.TEST)
        if default not in FailureType.ALL:
            raise ClassificationError(f"Unknown default failure type '{default}'")

        rules = []
        for entry in data.get("rules") or []:
            failure_type = entry.get("failure_type")
            if failure_type not in FailureType.ALL:
                raise ClassificationError(f"Unknown failure type '{failure_type}' in rule table")
            try:
                patterns = [re.compile(p, re.IGNORECASE) for p in entry.get("patterns", [])]
            except re.error as e:
                raise ClassificationError(f"Invalid pattern for {failure_type}: {e}") from e
            rules.append(Rule(failure_type, patterns))

        if not rules:
            raise ClassificationError(f"Rule table {version} has no rules")
        return cls(str(version), rules, default)


def load_rule_table(path=None) -> RuleTable:
    """Load and validate a rule table from disk (defaults to FAILURE_RULES_PATH)."""
    path = Path(path or config.FAILURE_RULES_PATH)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ClassificationError(f"Could not load rule table {path}: {e}") from e
    table = RuleTable.from_dict(data)
    logger.info(f"Loaded failure rule table {table.version} ({len(table.rules)} rules) from {path}")
    return table


class FailureClassifier:
    """Assigns a FailureType to error text using a RuleTable."""

    def __init__(self, rule_table: RuleTable):
        self.rule_table = rule_table

    @property
    def rule_version(self):
        return self.rule_table.version

    @property
    def default(self):
        return self.rule_table.default

    def classify(self, error_text: str) -> str:
        text = (error_text or "").lower()
        for rule in self.rule_table.rules:
            if rule.matches(text):
                return rule.failure_type
        return self.rule_table.default

    def matches_rule(self, line: str) -> bool:
        """True when any rule recognises the line, error marker or not."""
        text = (line or "").lower()
        return any(rule.matches(text) for rule in self.rule_table.rules)


def _clean_line(line: str) -> str:
    line = ANSI_ESCAPE.sub("", line)
    line = LEADING_TIMESTAMP.sub("", line)
    line = ACTIONS_COMMAND.sub("", line)
    return " ".join(line.split())


def canonicalize(message: str) -> str:
    """Readable form of an error message: no colour codes or timestamps, bounded length."""
    return _clean_line(message or "")[:MAX_MESSAGE_LENGTH]


def error_signature(message: str) -> str:
    """Deduplication key: digest of the canonical message with volatile tokens masked."""
    normalized = canonicalize(message).lower()
    for pattern, replacement in VOLATILE_TOKENS:
        normalized = pattern.sub(replacement, normalized)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def extract_error_messages(
    text: str, limit: int = 5, keep: Optional[Callable[[str], bool]] = None
) -> List[str]:
    """
    Pick the distinct error lines out of a log.

    A line is kept when it carries an error marker or when ``keep`` accepts it
    (the classifier passes its rule matcher, so "connect ETIMEDOUT" survives).
    Lines are deduplicated by signature so "retry 1/3 failed" and "retry 2/3 failed"
    count once. Falls back to the first non-empty line when nothing looks like an error.
    """
    messages = []
    seen = set()
    first_line = None
    for raw_line in (text or "").splitlines():
        line = canonicalize(raw_line)
        if not line:
            continue
        if first_line is None:
            first_line = line
        if not ERROR_MARKER.search(line) and not (keep is not None and keep(line)):
            continue
        signature = error_signature(line)
        if signature in seen:
            continue
        seen.add(signature)
        messages.append(line)
        if len(messages) >= limit:
            break

    if not messages and first_line:
        messages.append(first_line)
    return messages
