from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from stratus.models import DeploymentCreate, DeploymentORM, DeploymentRead, utcnow
from stratus.services.constants import (
    DEPLOYMENT_STATUS_AWAITING_APPROVAL,
    DEPLOYMENT_STATUS_IN_PROGRESS,
    DEPLOYMENT_STATUS_PENDING,
    DEPLOYMENT_TERMINAL_STATUSES,
)
from stratus.services.errors import DeploymentInProgressException, IntegrityException, NotFoundException

logger = logging.getLogger(__name__)


def get_deployment_orm(session: Session, *, deployment_id: int) -> DeploymentORM:
    stmt = (
        select(DeploymentORM)
        .options(selectinload(DeploymentORM.stack_operations))
        .where(DeploymentORM.id == deployment_id)
    )
    if not (deployment := session.exec(stmt).one_or_none()):
        raise NotFoundException("Deployment not found")
    return deployment


def create_deployment(session: Session, *, payload: DeploymentCreate) -> DeploymentORM:
    deployment = DeploymentORM.model_validate(
        dict(
            status=DEPLOYMENT_STATUS_PENDING,
            **payload.model_dump(),
        )
    )
    session.add(deployment)
    session.commit()
    session.refresh(deployment)
    logger.info(
        "Created deployment id=%s project=%s environment=%s requires_approval=%s",
        deployment.id,
        deployment.project,
        deployment.environment,
        deployment.requires_approval,
    )
    return deployment


def list_deployments(
    session: Session,
    *,
    environment: str | None = None,
    project: str | None = None,
    limit: int = 50,
) -> list[DeploymentRead]:
    stmt = select(DeploymentORM).options(selectinload(DeploymentORM.stack_operations))
    if environment is not None:
        stmt = stmt.where(DeploymentORM.environment == environment)
    if project is not None:
        stmt = stmt.where(DeploymentORM.project == project)
    stmt = stmt.order_by(DeploymentORM.id.desc()).limit(limit)
    return [DeploymentRead.model_validate(d) for d in session.exec(stmt).all()]


def get_deployment(session: Session, *, deployment_id: int) -> DeploymentRead:
    return DeploymentRead.model_validate(get_deployment_orm(session, deployment_id=deployment_id))


def latest_deployment(session: Session, *, project: str, environment: str) -> DeploymentORM | None:
    stmt = (
        select(DeploymentORM)
        .where(DeploymentORM.project == project, DeploymentORM.environment == environment)
        .order_by(DeploymentORM.id.desc())
        .limit(1)
    )
    return session.exec(stmt).first()


def approve_deployment(session: Session, *, deployment_id: int, approver: str) -> DeploymentRead:
    """Record an approval; only deployments that have not started can be approved."""
    approver = approver.strip()
    if not approver:
        raise IntegrityException("Approver is required")
    deployment = get_deployment_orm(session, deployment_id=deployment_id)
    if deployment.status not in (DEPLOYMENT_STATUS_PENDING, DEPLOYMENT_STATUS_AWAITING_APPROVAL):
        raise IntegrityException(f"Deployment {deployment_id} is {deployment.status} and can no longer be approved")
    if deployment.approved_by is not None:
        logger.info("Deployment id=%s already approved by %s", deployment_id, deployment.approved_by)
        return DeploymentRead.model_validate(deployment)
    deployment.approved_by = approver
    deployment.approved_at = utcnow()
    session.add(deployment)
    session.commit()
    session.refresh(deployment)
    logger.info(
        "Approved deployment id=%s environment=%s approver=%s",
        deployment_id,
        deployment.environment,
        approver,
    )
    return DeploymentRead.model_validate(deployment)


def mark_in_progress(session: Session, deployment: DeploymentORM) -> DeploymentORM:
    """Claim the environment for this deployment; at most one may be in progress."""
    if deployment.status in DEPLOYMENT_TERMINAL_STATUSES:
        raise IntegrityException(f"Deployment {deployment.id} already finished with status {deployment.status}")
    deployment.status = DEPLOYMENT_STATUS_IN_PROGRESS
    deployment.started_at = utcnow()
    deployment.last_error = None
    session.add(deployment)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning(
            "Deployment id=%s rejected: another deployment of environment=%s is in progress",
            deployment.id,
            deployment.environment,
        )
        raise DeploymentInProgressException(
            f"Another deployment of environment {deployment.environment!r} is already in progress"
        ) from exc
    session.refresh(deployment)
    return deployment


def mark_awaiting_approval(session: Session, deployment: DeploymentORM) -> DeploymentORM:
    deployment.status = DEPLOYMENT_STATUS_AWAITING_APPROVAL
    session.add(deployment)
    session.commit()
    session.refresh(deployment)
    logger.info(
        "Deployment id=%s environment=%s is awaiting approval",
        deployment.id,
        deployment.environment,
    )
    return deployment


def mark_finished(
    session: Session,
    deployment: DeploymentORM,
    *,
    status: str,
    last_error: str | None = None,
) -> DeploymentORM:
    deployment.status = status
    deployment.last_error = last_error
    deployment.finished_at = utcnow()
    session.add(deployment)
    session.commit()
    session.refresh(deployment)
    return deployment
