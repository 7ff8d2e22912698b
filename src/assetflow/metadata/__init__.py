"""Metadata storage: assets, versions, processing queue and approval workflows."""

from datetime import datetime
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import declarative_base, relationship


@compiles(JSONB, "sqlite")
def compile_jsonb_for_sqlite(element, compiler, **kw):
    return compiler.visit_JSON(element, **kw)


Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


ASSET_TYPES = ("VIDEO", "DOCUMENT")

VERSION_UPLOADING = "UPLOADING"
VERSION_PROCESSING = "PROCESSING"
VERSION_READY = "READY"
VERSION_FAILED = "FAILED"
VERSION_DELETED = "DELETED"

QUEUE_PENDING = "PENDING"
QUEUE_PROCESSING = "PROCESSING"
QUEUE_COMPLETED = "COMPLETED"
QUEUE_FAILED = "FAILED"
QUEUE_OPEN_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING)

WORKFLOW_IN_PROGRESS = "in_progress"
WORKFLOW_COMPLETED = "completed"

HISTORY_ACTIONS = ("ADVANCE", "MANUAL_APPROVAL", "REJECT", "ASSIGN", "REASSIGN")


class Tenant(Base):
    """Tenant (company) owning assets, roles and flow chains."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_new_id)
    identifier = Column(String(255), nullable=False, unique=True)  # Human-facing slug
    name = Column(String(255), nullable=False)
    active = Column(Boolean, default=True, nullable=False, index=True)
    settings = Column(JSONB, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Role(Base):
    """Tenant role a flow step can be bound to."""

    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
    )


class Employee(Base):
    """Tenant member acting on assets and workflows."""

    __tablename__ = "employees"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    display_name = Column(String(255))
    role_id = Column(String(36), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True, index=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    role = relationship("Role")

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_employees_tenant_email"),
    )


class Asset(Base):
    """A video or document; parent of its versions.

    ``current_version`` is the latest uploaded number. The active storage
    key, playback URL and status mirror the active version and only change
    on activation.
    """

    __tablename__ = "assets"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_type = Column(String(16), nullable=False)
    title = Column(String(512), nullable=False)
    current_version = Column(Integer, nullable=False, default=0)
    active_storage_key = Column(Text)
    playback_url = Column(Text)
    status = Column(String(32), nullable=False, default="uploading")
    workflow_status = Column(String(32))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    versions = relationship("AssetVersion", back_populates="asset", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_assets_tenant_type", "tenant_id", "asset_type"),
        CheckConstraint("asset_type in ('VIDEO','DOCUMENT')", name="ck_assets_asset_type"),
        CheckConstraint(
            "status in ('uploading','processing','ready','error')",
            name="ck_assets_status",
        ),
    )


class AssetVersion(Base):
    """One uploaded or processed revision of an asset."""

    __tablename__ = "asset_versions"

    id = Column(String(36), primary_key=True, default=_new_id)
    parent_asset_id = Column(String(36), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    version_number = Column(Integer, nullable=False)
    storage_key = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=VERSION_READY)
    is_active = Column(Boolean, nullable=False, default=False)
    note = Column(Text)
    uploaded_by = Column(String(36), ForeignKey("employees.id", ondelete="SET NULL"))
    file_size_bytes = Column(BigInteger, nullable=False, default=0)
    playback_url = Column(Text)
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    asset = relationship("Asset", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("parent_asset_id", "version_number", name="uq_asset_versions_parent_number"),
        Index("idx_asset_versions_parent", "parent_asset_id"),
        Index(
            "uq_asset_versions_active_per_parent",
            "parent_asset_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        CheckConstraint(
            "status in ('UPLOADING','PROCESSING','READY','FAILED','DELETED')",
            name="ck_asset_versions_status",
        ),
    )


class ProcessingQueueItem(Base):
    """A pending or in-flight background processing job for one asset."""

    __tablename__ = "processing_queue_items"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    asset_id = Column(String(36), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    version_id = Column(String(36), ForeignKey("asset_versions.id", ondelete="SET NULL"))
    stage = Column(String(32), nullable=False, default="compress")
    source_key = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=QUEUE_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    priority = Column(Integer, nullable=False, default=50)
    last_error = Column(Text)
    output_key = Column(Text)
    output_size = Column(BigInteger)
    claimed_by = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("idx_processing_queue_status_priority", "status", "priority", "created_at"),
        Index("idx_processing_queue_asset", "asset_id"),
        Index(
            "uq_processing_queue_open_per_asset",
            "asset_id",
            unique=True,
            postgresql_where=text("status in ('PENDING','PROCESSING')"),
            sqlite_where=text("status in ('PENDING','PROCESSING')"),
        ),
        CheckConstraint(
            "status in ('PENDING','PROCESSING','COMPLETED','FAILED')",
            name="ck_processing_queue_status",
        ),
    )


class FlowChain(Base):
    """Administrator-defined approval chain."""

    __tablename__ = "flow_chains"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    steps = relationship(
        "FlowStep",
        back_populates="chain",
        cascade="all, delete-orphan",
        order_by="[FlowStep.created_at, FlowStep.sequence]",
    )


class FlowStep(Base):
    """One named stage of a flow chain, optionally bound to a role."""

    __tablename__ = "flow_steps"

    id = Column(String(36), primary_key=True, default=_new_id)
    chain_id = Column(String(36), ForeignKey("flow_chains.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    role_id = Column(String(36), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    sequence = Column(Integer, nullable=False, default=0)  # Creation position within the chain
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    chain = relationship("FlowChain", back_populates="steps")
    role = relationship("Role")
    next_transitions = relationship(
        "FlowTransition",
        foreign_keys="FlowTransition.from_step_id",
        back_populates="from_step",
        cascade="all, delete-orphan",
    )


class FlowTransition(Base):
    """Directed edge between two steps of a chain."""

    __tablename__ = "flow_transitions"

    id = Column(String(36), primary_key=True, default=_new_id)
    from_step_id = Column(String(36), ForeignKey("flow_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    to_step_id = Column(String(36), ForeignKey("flow_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    condition = Column(String(64), nullable=False, default="SUCCESS")

    from_step = relationship("FlowStep", foreign_keys=[from_step_id], back_populates="next_transitions")
    to_step = relationship("FlowStep", foreign_keys=[to_step_id])

    __table_args__ = (
        UniqueConstraint("from_step_id", "to_step_id", "condition", name="uq_flow_transitions_edge"),
    )


class WorkflowState(Base):
    """Live position of one asset inside a flow chain."""

    __tablename__ = "workflow_states"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_id = Column(String(36), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    asset_type = Column(String(16), nullable=False)
    flow_chain_id = Column(String(36), ForeignKey("flow_chains.id", ondelete="RESTRICT"), nullable=False, index=True)
    current_step_id = Column(String(36), ForeignKey("flow_steps.id", ondelete="RESTRICT"), nullable=False)
    assigned_to_role_id = Column(String(36), ForeignKey("roles.id", ondelete="SET NULL"))
    assigned_to_employee_id = Column(String(36), ForeignKey("employees.id", ondelete="SET NULL"))
    status = Column(String(16), nullable=False, default=WORKFLOW_IN_PROGRESS)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    flow_chain = relationship("FlowChain")
    current_step = relationship("FlowStep")
    history = relationship(
        "WorkflowHistory",
        back_populates="workflow_state",
        order_by="WorkflowHistory.created_at",
    )

    __table_args__ = (
        UniqueConstraint("asset_id", "asset_type", name="uq_workflow_states_asset"),
        CheckConstraint("status in ('in_progress','completed')", name="ck_workflow_states_status"),
    )


class WorkflowHistory(Base):
    """Append-only audit entry for a workflow state change."""

    __tablename__ = "workflow_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    workflow_state_id = Column(
        String(36),
        ForeignKey("workflow_states.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = Column(String(32), nullable=False)
    actor_id = Column(String(36), ForeignKey("employees.id", ondelete="SET NULL"))
    from_step_id = Column(String(36), ForeignKey("flow_steps.id", ondelete="SET NULL"))
    to_step_id = Column(String(36), ForeignKey("flow_steps.id", ondelete="SET NULL"))
    comment = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    workflow_state = relationship("WorkflowState", back_populates="history")

    __table_args__ = (
        CheckConstraint(
            "action in ('ADVANCE','MANUAL_APPROVAL','REJECT','ASSIGN','REASSIGN')",
            name="ck_workflow_history_action",
        ),
    )
