"""
Error Types

Exceptions raised across the ingestion pipeline, the store and the GitHub client.
"""


class MonitorError(Exception):
    """Base exception for the build failure monitor."""


class VerificationError(MonitorError):
    """A webhook delivery failed verification. Sender error, not retried."""


class InvalidSignature(VerificationError):
    """The delivery signature is missing or does not match the body."""


class MalformedPayload(VerificationError):
    """The delivery body is not valid JSON or does not match its event shape."""


class TransientStoreError(MonitorError):
    """A storage operation failed in a way that may succeed on retry."""


class ClassificationError(MonitorError):
    """The failure classifier could not run (for example an unusable rule table)."""


class GitHubConfigurationError(MonitorError):
    """Raised when required GitHub App configuration is missing."""


class GitHubAPIError(MonitorError):
    """Raised when a GitHub API call fails."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code
