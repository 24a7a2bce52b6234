"""Compliance data initialisation.

Seeds the privacy policy version required by APPI (Act on the Protection of
Personal Information) and records that the initialisation ran. The policy row
and its audit row are written in one transaction and failures are fatal. The
external audit sink is notified afterwards on a best-effort basis.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from ..audit.trail import AuditSink, ComplianceEvent, emit_best_effort
from .connection import Database

logger = logging.getLogger(__name__)


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ComplianceInitError(Exception):
    """Raised when compliance data cannot be written."""

    def __init__(self, environment: str, cause: BaseException):
        self.environment = environment
        self.cause = cause
        super().__init__(f"Failed to initialize compliance data in {environment}: {cause}")


@dataclass
class ComplianceSeed:
    """Privacy policy version seeded into every environment.

    Attributes:
        policy_version: Policy version label, unique in privacy_policy_versions
        en_content_hash: SHA-256 of the English policy text
        jp_content_hash: SHA-256 of the Japanese policy text
        major_changes: Summary of changes in this version
        requires_reconsent: Whether users must consent again
        compliance_level: Compliance level recorded on the audit row
    """

    policy_version: str = "v1.0.0"
    en_content_hash: str = field(default_factory=lambda: _sha256("initial_en_policy"))
    jp_content_hash: str = field(default_factory=lambda: _sha256("initial_jp_policy"))
    major_changes: list[str] = field(
        default_factory=lambda: ["Initial APPI compliant privacy policy"]
    )
    requires_reconsent: bool = True
    compliance_level: str = "APPI_Article_24_compliant"


INSERT_POLICY_SQL = text(
    """
    INSERT INTO privacy_policy_versions (
        version, effective_date, en_content_hash, jp_content_hash,
        major_changes, requires_reconsent, environment
    ) VALUES (
        :version, :effective_date, :en_content_hash, :jp_content_hash,
        :major_changes, :requires_reconsent, :environment
    ) ON CONFLICT (version) DO NOTHING
    """
).bindparams(bindparam("effective_date", type_=DateTime(timezone=True)))

INSERT_AUDIT_SQL = text(
    """
    INSERT INTO appi_audit_events (
        event_id, event_type, event_timestamp, ip_address,
        user_agent, data_accessed, compliance_status, event_details
    ) VALUES (
        :event_id, 'data_access', :event_timestamp, '127.0.0.1',
        'migration_script', 'APPI compliance tables initialized', 'compliant',
        :event_details
    )
    """
).bindparams(bindparam("event_timestamp", type_=DateTime(timezone=True)))


async def initialize_compliance_data(
    database: Database,
    environment: str,
    seed: Optional[ComplianceSeed] = None,
    sink: Optional[AuditSink] = None,
    actor: str = "migration_script",
) -> bool:
    """Seed the privacy policy version and record the initialisation.

    Safe to run repeatedly: an existing policy version is left untouched,
    while every run appends its own audit row.

    Args:
        database: Connected database handle
        environment: Environment name stamped on the rows
        seed: Policy data to seed
        sink: Optional external audit sink
        actor: Actor recorded on the external audit event

    Returns:
        True if the policy version was inserted, False if it already existed

    Raises:
        ComplianceInitError: If either row cannot be written
    """
    seed = seed or ComplianceSeed()
    now = datetime.now(timezone.utc)

    logger.info(f"Initializing APPI compliance data in {environment}...")

    try:
        async with database.transaction() as conn:
            result = await conn.execute(
                INSERT_POLICY_SQL,
                {
                    "version": seed.policy_version,
                    "effective_date": now,
                    "en_content_hash": seed.en_content_hash,
                    "jp_content_hash": seed.jp_content_hash,
                    "major_changes": json.dumps(seed.major_changes),
                    "requires_reconsent": seed.requires_reconsent,
                    "environment": environment,
                },
            )
            inserted = result.rowcount == 1

            await conn.execute(
                INSERT_AUDIT_SQL,
                {
                    "event_id": f"init_{now.timestamp():.6f}_appi",
                    "event_timestamp": now,
                    "event_details": json.dumps(
                        {
                            "action": "database_initialization",
                            "compliance_level": seed.compliance_level,
                            "environment": environment,
                        }
                    ),
                },
            )
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize APPI compliance data in {environment}: {e}")
        raise ComplianceInitError(environment, e) from e

    if inserted:
        logger.info(f"Privacy policy {seed.policy_version} recorded in {environment}")
    else:
        logger.info(f"Privacy policy {seed.policy_version} already present in {environment}")

    emit_best_effort(
        sink,
        ComplianceEvent.create(
            "compliance.initialized",
            environment=environment,
            actor=actor,
            details={
                "policy_version": seed.policy_version,
                "inserted": inserted,
                "compliance_level": seed.compliance_level,
            },
        ),
    )
    return inserted
