# retention_engine/services/retention/expiration.py
"""
Expiration predicate builder.

A row is expired when its policy column is strictly older than
`now - period`, and it matches the policy filter if there is one.
"""

from datetime import datetime

from sqlalchemy import and_, func
from sqlalchemy.orm import Query, Session

from retention_engine.services.retention.policy_service import RetentionPolicy


def expiration_cutoff(policy: RetentionPolicy, now: datetime) -> datetime:
    """Timestamps strictly before this are expired."""
    return now - policy.period


def expired_query(db: Session, policy: RetentionPolicy, now: datetime) -> Query:
    """
    Query selecting the policy's expired rows.

    batch_limit is not applied here; callers order and limit as their
    strategy requires.
    """
    conditions = [policy.timestamp < expiration_cutoff(policy, now)]

    restriction = policy.filter_clause()
    if restriction is not None:
        conditions.append(restriction)

    return db.query(policy.entity).filter(and_(*conditions))


def expired_count(db: Session, policy: RetentionPolicy, now: datetime) -> int:
    """Total number of expired rows, ignoring batch_limit."""
    return (
        expired_query(db, policy, now)
        .with_entities(func.count(policy.identifier))
        .scalar()
    ) or 0
