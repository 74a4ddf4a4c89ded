from datetime import datetime, timezone
from typing import Optional, Any

from sqlmodel import Field, SQLModel, Relationship
from sqlalchemy import Column, ForeignKey, Integer, Index, JSON, Text

from stratus.services.constants import (
    DEPLOYMENT_STATUS_IN_PROGRESS,
    DEPLOYMENT_STATUS_PENDING,
    STACK_OP_STATUS_PENDING,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentBase(SQLModel):
    environment: str
    project: str
    requires_approval: bool = False


class DeploymentORM(DeploymentBase, table=True):
    __tablename__ = "deployment"
    __table_args__ = (
        Index(
            "uq_in_progress_deployment_per_environment",
            "project", "environment",
            unique=True,
            sqlite_where=Column("status") == DEPLOYMENT_STATUS_IN_PROGRESS,
            postgresql_where=Column("status") == DEPLOYMENT_STATUS_IN_PROGRESS,
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    environment: str = Field(index=True)
    project: str = Field(index=True)
    status: str = Field(default=DEPLOYMENT_STATUS_PENDING, nullable=False, index=True)
    approved_by: Optional[str] = Field(default=None)
    approved_at: Optional[datetime] = Field(default=None)
    template_digest: Optional[str] = Field(default=None)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
    stack_operations: list["StackOperationORM"] = Relationship(
        back_populates="deployment",
        sa_relationship_kwargs={"order_by": "StackOperationORM.position", "cascade": "all, delete-orphan"},
    )


class DeploymentCreate(DeploymentBase):
    pass


class ApprovalCreate(SQLModel):
    approver: str


class StackOperationBase(SQLModel):
    stack: str
    stack_name: str
    position: int
    operation: Optional[str] = None


class StackOperationORM(StackOperationBase, table=True):
    __tablename__ = "stack_operation"

    id: Optional[int] = Field(default=None, primary_key=True)
    deployment_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("deployment.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    status: str = Field(default=STACK_OP_STATUS_PENDING, nullable=False)
    stack_status: Optional[str] = Field(default=None)
    parameters_json: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    outputs_json: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)
    deployment: DeploymentORM = Relationship(back_populates="stack_operations")


class StackOperationRead(StackOperationBase):
    id: int
    status: str
    stack_status: Optional[str] = None
    parameters_json: Optional[dict[str, Any]] = None
    outputs_json: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class DeploymentRead(DeploymentBase):
    id: int
    status: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    template_digest: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    stack_operations: list[StackOperationRead] = []
