from datetime import timezone

import pytest
from sqlmodel import select

from stratus.models import DeploymentCreate, DeploymentORM, StackOperationORM, utcnow
from stratus.services import deployments as deployment_service
from stratus.services.errors import DeploymentInProgressException, IntegrityException, NotFoundException


def _create(session, environment="staging", project="acme", requires_approval=False):
    return deployment_service.create_deployment(
        session,
        payload=DeploymentCreate(environment=environment, project=project, requires_approval=requires_approval),
    )


def test_create_and_get(db_session):
    created = _create(db_session)

    assert created.id is not None
    assert created.status == "pending"

    fetched = deployment_service.get_deployment(db_session, deployment_id=created.id)
    assert fetched.environment == "staging"
    assert fetched.project == "acme"
    assert fetched.stack_operations == []


def test_get_missing(db_session):
    with pytest.raises(NotFoundException):
        deployment_service.get_deployment(db_session, deployment_id=999)


def test_list_filters_and_orders_newest_first(db_session):
    first = _create(db_session, "development")
    second = _create(db_session, "staging")
    third = _create(db_session, "staging", project="other")

    assert [d.id for d in deployment_service.list_deployments(db_session)] == [third.id, second.id, first.id]
    assert [d.id for d in deployment_service.list_deployments(db_session, environment="staging")] == [
        third.id,
        second.id,
    ]
    assert [d.id for d in deployment_service.list_deployments(db_session, project="acme", limit=1)] == [second.id]


def test_latest_deployment(db_session):
    assert deployment_service.latest_deployment(db_session, project="acme", environment="staging") is None
    _create(db_session)
    newest = _create(db_session)
    latest = deployment_service.latest_deployment(db_session, project="acme", environment="staging")
    assert latest.id == newest.id


def test_approve(db_session):
    deployment = _create(db_session, "production", requires_approval=True)
    deployment_service.mark_awaiting_approval(db_session, deployment)

    approved = deployment_service.approve_deployment(db_session, deployment_id=deployment.id, approver=" alice ")
    assert approved.approved_by == "alice"
    assert approved.approved_at is not None

    again = deployment_service.approve_deployment(db_session, deployment_id=deployment.id, approver="bob")
    assert again.approved_by == "alice"


def test_approve_rejects_blank_approver_and_started_deployments(db_session):
    deployment = _create(db_session)
    with pytest.raises(IntegrityException, match="Approver is required"):
        deployment_service.approve_deployment(db_session, deployment_id=deployment.id, approver="  ")

    deployment_service.mark_in_progress(db_session, deployment)
    with pytest.raises(IntegrityException, match="can no longer be approved"):
        deployment_service.approve_deployment(db_session, deployment_id=deployment.id, approver="alice")


def test_only_one_in_progress_deployment_per_environment(db_session):
    first = _create(db_session)
    second = _create(db_session)
    other_env = _create(db_session, "development")
    other_project = _create(db_session, project="other")

    deployment_service.mark_in_progress(db_session, first)
    with pytest.raises(DeploymentInProgressException):
        deployment_service.mark_in_progress(db_session, second)

    assert db_session.get(DeploymentORM, second.id).status == "pending"
    deployment_service.mark_in_progress(db_session, other_env)
    deployment_service.mark_in_progress(db_session, other_project)

    deployment_service.mark_finished(db_session, first, status="ready")
    deployment_service.mark_in_progress(db_session, second)
    assert second.status == "in_progress"


def test_finished_deployment_cannot_restart(db_session):
    deployment = _create(db_session)
    deployment_service.mark_in_progress(db_session, deployment)
    deployment_service.mark_finished(db_session, deployment, status="error", last_error="boom")

    assert deployment.finished_at is not None
    assert deployment.last_error == "boom"
    with pytest.raises(IntegrityException, match="already finished"):
        deployment_service.mark_in_progress(db_session, deployment)


def test_stack_operations_are_ordered_and_cascade(db_session):
    deployment = _create(db_session)
    for position, stack in reversed(list(enumerate(["network", "compute"]))):
        db_session.add(
            StackOperationORM(
                deployment_id=deployment.id,
                stack=stack,
                stack_name=f"acme-staging-{stack}",
                position=position,
                parameters_json={"Environment": "staging"},
            )
        )
    db_session.commit()

    read = deployment_service.get_deployment(db_session, deployment_id=deployment.id)
    assert [op.stack for op in read.stack_operations] == ["network", "compute"]
    assert read.stack_operations[0].parameters_json == {"Environment": "staging"}

    db_session.delete(db_session.get(DeploymentORM, deployment.id))
    db_session.commit()
    assert db_session.exec(select(StackOperationORM)).all() == []


def test_get_deployment_orm(db_session):
    created = _create(db_session)

    deployment = deployment_service.get_deployment_orm(db_session, deployment_id=created.id)
    assert isinstance(deployment, DeploymentORM)
    assert deployment.stack_operations == []
    with pytest.raises(NotFoundException):
        deployment_service.get_deployment_orm(db_session, deployment_id=999)


def test_lifecycle_timestamps_use_utc(db_session):
    assert utcnow().tzinfo is timezone.utc

    deployment = _create(db_session)
    deployment_service.mark_in_progress(db_session, deployment)
    deployment_service.mark_finished(db_session, deployment, status="ready")

    assert deployment.created_at is not None
    assert deployment.started_at is not None
    assert deployment.finished_at is not None
