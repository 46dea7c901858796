"""
Database Models

This module defines the silver layer tables: tracked repositories, builds,
deduplicated failures and GitHub App installations.
"""
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    JSON,
    Text,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from build_failure_monitor.utils import utcnow

Base = declarative_base()


def new_id():
    return uuid.uuid4().hex


class BuildStatus:
    SUCCESS = "success"
    FAILED = "failed"
    FLAKY = "flaky"

    ALL = (SUCCESS, FAILED, FLAKY)


class FailureType:
    TEST = "test"
    DEPENDENCY = "dependency"
    DOCKER = "docker"
    INFRA = "infra"

    ALL = (TEST, DEPENDENCY, DOCKER, INFRA)


class Repository(Base):
    """A repository tracked by the monitor. Never deleted, only deactivated."""

    __tablename__ = "repositories"

    id = Column(String, primary_key=True, default=new_id)
    owner = Column(String, nullable=False)
    name = Column(String, nullable=False)
    # lower-cased "owner/name", the lookup key for webhooks and sync
    full_name_key = Column(String, unique=True, index=True, nullable=False)
    default_branch = Column(String, default="main")
    description = Column(Text)
    html_url = Column(String)
    installation_id = Column(String, index=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    builds = relationship("Build", back_populates="repository")

    @property
    def full_name(self):
        return f"{self.owner}/{self.name}"

    def __repr__(self):
        return f"<Repository(full_name={self.full_name}, active={self.active})>"


class Build(Base):
    """One terminal CI run, keyed by (repository, external run id)."""

    __tablename__ = "builds"
    __table_args__ = (
        UniqueConstraint("repository_id", "external_run_id", name="uq_build_run"),
    )

    id = Column(String, primary_key=True, default=new_id)
    repository_id = Column(String, ForeignKey("repositories.id"), index=True, nullable=False)
    external_run_id = Column(String, nullable=False)
    workflow_name = Column(String, index=True)
    branch = Column(String, index=True)
    commit_hash = Column(String)
    status = Column(String, index=True, nullable=False)
    conclusion = Column(String)
    run_attempt = Column(Integer, default=1)
    duration_seconds = Column(Integer, default=0, nullable=False)
    triggered_at = Column(DateTime, index=True, nullable=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    repository = relationship("Repository", back_populates="builds")

    def __repr__(self):
        return f"<Build(run={self.external_run_id}, status={self.status})>"


class Failure(Base):
    """A recurring error signature, deduplicated per repository."""

    __tablename__ = "failures"
    __table_args__ = (
        UniqueConstraint("repository_id", "signature", name="uq_failure_signature"),
    )

    id = Column(String, primary_key=True, default=new_id)
    repository_id = Column(String, ForeignKey("repositories.id"), index=True, nullable=False)
    # most recent build that surfaced this signature
    build_id = Column(String, ForeignKey("builds.id"), index=True)
    signature = Column(String, nullable=False)
    failure_type = Column(String, index=True, nullable=False)
    error_message = Column(Text, nullable=False)
    frequency_count = Column(Integer, default=1, nullable=False)
    first_seen_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, index=True, nullable=False)
    classification_degraded = Column(Boolean, default=False, nullable=False)
    rule_version = Column(String)

    repository = relationship("Repository")

    def __repr__(self):
        return f"<Failure(type={self.failure_type}, count={self.frequency_count})>"


class FailureOccurrence(Base):
    """Links a failure to each build it was seen in; one row per pair."""

    __tablename__ = "failure_occurrences"
    __table_args__ = (
        UniqueConstraint("failure_id", "build_id", name="uq_failure_occurrence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    failure_id = Column(String, ForeignKey("failures.id"), index=True, nullable=False)
    build_id = Column(String, ForeignKey("builds.id"), index=True, nullable=False)
    seen_at = Column(DateTime, nullable=False)


class Installation(Base):
    """GitHub App installation record, loaded into InstallationState at startup."""

    __tablename__ = "installations"

    installation_id = Column(String, primary_key=True)
    account_login = Column(String)
    status = Column(String, default="active", nullable=False)  # active | suspended | deleted
    repositories = Column(JSON, default=list)
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Installation(id={self.installation_id}, status={self.status})>"
