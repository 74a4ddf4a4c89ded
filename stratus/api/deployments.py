from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from stratus.db import get_session
from stratus.models import ApprovalCreate, DeploymentRead
from stratus.services import deployments as deployment_service

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.get("", response_model=list[DeploymentRead])
def list_deployments(
    environment: str | None = None,
    project: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> list[DeploymentRead]:
    return deployment_service.list_deployments(session, environment=environment, project=project, limit=limit)


@router.get("/{deployment_id}", response_model=DeploymentRead)
def get_deployment(deployment_id: int, session: Session = Depends(get_session)) -> DeploymentRead:
    return deployment_service.get_deployment(session, deployment_id=deployment_id)


@router.post("/{deployment_id}/approve", response_model=DeploymentRead)
def approve_deployment(
    deployment_id: int,
    payload: ApprovalCreate,
    session: Session = Depends(get_session),
) -> DeploymentRead:
    return deployment_service.approve_deployment(session, deployment_id=deployment_id, approver=payload.approver)
