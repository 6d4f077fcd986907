"""SQLAlchemy models"""

from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Text,
    ForeignKey,
    TIMESTAMP,
    JSON,
    Integer,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from gatehouse.database.database import Base
import uuid

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

INVITATION_PENDING = "pending"
INVITATION_ACCEPTED = "accepted"
INVITATION_REVOKED = "revoked"
INVITATION_EXPIRED = "expired"  # derived at read time, never stored

INVITATION_TYPE_EMAIL = "email"
INVITATION_TYPE_LINK = "link"

SUPER_ADMIN_ROLE_SLUG = "super-admin"


def generate_id():
    """Generate a unique ID"""
    return str(uuid.uuid4())


class SoftDeleteMixin:
    """Tombstone support: rows are hidden, not removed, until hard-deleted"""

    deleted_at = Column(TIMESTAMP, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self) -> None:
        self.deleted_at = datetime.utcnow()

    def restore(self) -> None:
        self.deleted_at = None


class Organization(SoftDeleteMixin, Base):
    """Organization (tenant) model"""
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=generate_id)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    domain = Column(String(63), nullable=True)  # Subdomain
    plan = Column(String(50), default="free", nullable=False)
    settings = Column(JSONType, default=dict)
    branding = Column(JSONType, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # Relationships
    users = relationship("User", back_populates="organization", cascade="all, delete-orphan")
    roles = relationship("Role", back_populates="organization", cascade="all, delete-orphan")
    invitations = relationship("Invitation", back_populates="organization", cascade="all, delete-orphan")

    def to_dict(self):
        """Convert organization to dictionary"""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "domain": self.domain,
            "plan": self.plan,
            "settings": self.settings or {},
            "branding": self.branding or {},
            "is_active": self.is_active,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class User(SoftDeleteMixin, Base):
    """User model"""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_id)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    email = Column(String, nullable=False)
    username = Column(String(100), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    password_hash = Column(String, nullable=False)
    status = Column(String, default="active", nullable=False)

    # Two-factor authentication
    two_fa_enabled = Column(Boolean, default=False, nullable=False)
    two_fa_secret = Column(String)  # Fernet-encrypted
    two_fa_backup_codes = Column(JSONType, default=list)  # bcrypt hashes

    # Lockout
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(TIMESTAMP, nullable=True)
    last_login_at = Column(TIMESTAMP, nullable=True)
    last_login_ip = Column(String(45), nullable=True)

    # Password reset (hash of the currently valid reset token)
    password_reset_token_hash = Column(String, nullable=True)
    password_reset_expires_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # Relationships
    organization = relationship("Organization", back_populates="users")
    role_assignments = relationship(
        "UserRole",
        back_populates="user",
        cascade="all, delete-orphan",
        foreign_keys="UserRole.user_id",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_users_organization_email"),
        UniqueConstraint("organization_id", "username", name="uq_users_organization_username"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email

    def to_dict(self):
        """Convert user to dictionary (excluding secrets)"""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status,
            "two_fa_enabled": self.two_fa_enabled,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Permission(Base):
    """Permission catalog entry, identified by a dotted module.action slug"""
    __tablename__ = "permissions"

    id = Column(String, primary_key=True, default=generate_id)
    slug = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    module = Column(String(100), nullable=False)
    category = Column(String(50), nullable=True)
    risk_level = Column(String(20), default="low", nullable=False)
    requires_mfa = Column(Boolean, default=False, nullable=False)
    requires_approval = Column(Boolean, default=False, nullable=False)
    # Declared relationships between permissions; not enforced by resolution
    depends_on = Column(JSONType, default=list)
    conflicts_with = Column(JSONType, default=list)
    is_system = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_deprecated = Column(Boolean, default=False, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "module": self.module,
            "category": self.category,
            "risk_level": self.risk_level,
            "requires_mfa": self.requires_mfa,
            "requires_approval": self.requires_approval,
            "depends_on": self.depends_on or [],
            "conflicts_with": self.conflicts_with or [],
            "is_system": self.is_system,
            "is_active": self.is_active,
            "is_deprecated": self.is_deprecated,
        }


class Role(SoftDeleteMixin, Base):
    """Role model.

    A role without an organization is system-wide and usable from any tenant.
    `permissions` holds permission slugs; order carries no meaning.
    """
    __tablename__ = "roles"

    id = Column(String, primary_key=True, default=generate_id)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    permissions = Column(JSONType, default=list)
    priority = Column(Integer, default=0, nullable=False)
    is_system = Column(Boolean, default=False, nullable=False)
    is_assignable = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    level = Column(Integer, default=0, nullable=False)
    parent_role_id = Column(String, ForeignKey("roles.id"), nullable=True)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # Relationships
    organization = relationship("Organization", back_populates="roles")
    parent_role = relationship("Role", remote_side=[id])
    assignments = relationship("UserRole", back_populates="role", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_roles_organization_slug"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "permissions": sorted(set(self.permissions or [])),
            "priority": self.priority,
            "is_system": self.is_system,
            "is_assignable": self.is_assignable,
            "is_default": self.is_default,
            "level": self.level,
            "parent_role_id": self.parent_role_id,
        }


class UserRole(Base):
    """Assignment of a role to a user, optionally bound to a resource"""
    __tablename__ = "user_roles"

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role_id = Column(String, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    scope = Column(String(50), default="global", nullable=False)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String, nullable=True)
    conditions = Column(JSONType, default=dict)
    expires_at = Column(TIMESTAMP, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    assigned_by = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_reason = Column(Text, nullable=True)
    assigned_at = Column(TIMESTAMP, server_default=func.now())

    # Relationships
    user = relationship("User", back_populates="role_assignments", foreign_keys=[user_id])
    role = relationship("Role", back_populates="assignments")

    def is_effective(self, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        return bool(self.is_active) and (self.expires_at is None or self.expires_at > now)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "role_slug": self.role.slug if self.role else None,
            "scope": self.scope,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "conditions": self.conditions or {},
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
            "assigned_by": self.assigned_by,
            "assigned_reason": self.assigned_reason,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }


class Invitation(Base):
    """Invitation to join an organization.

    `email` invitations are single-use. `link` invitations are shareable and
    may carry `max_uses`. Only the SHA-256 of the token is stored.
    """
    __tablename__ = "invitations"

    id = Column(String, primary_key=True, default=generate_id)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    email = Column(String, nullable=True)
    token_hash = Column(String, unique=True, nullable=False)
    role_id = Column(String, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    invited_by = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    type = Column(String(20), default=INVITATION_TYPE_EMAIL, nullable=False)
    status = Column(String(20), default=INVITATION_PENDING, nullable=False)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, default=0, nullable=False)
    accepted_by = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    accepted_at = Column(TIMESTAMP, nullable=True)
    expires_at = Column(TIMESTAMP, nullable=False)
    invitation_metadata = Column("metadata", JSONType, default=dict)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # Relationships
    organization = relationship("Organization", back_populates="invitations")
    role = relationship("Role")
    inviter = relationship("User", foreign_keys=[invited_by])
    accepter = relationship("User", foreign_keys=[accepted_by])

    def is_expired(self, now: datetime = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at

    @property
    def effective_status(self) -> str:
        """Stored status, with pending-but-expired reported as expired"""
        if self.status == INVITATION_PENDING and self.is_expired():
            return INVITATION_EXPIRED
        return self.status

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "role_id": self.role_id,
            "invited_by": self.invited_by,
            "type": self.type,
            "status": self.effective_status,
            "max_uses": self.max_uses,
            "used_count": self.used_count,
            "accepted_by": self.accepted_by,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# Uniqueness among live rows only; tombstoned organizations release their slug/domain
Index(
    "uq_organizations_slug_live",
    Organization.slug,
    unique=True,
    postgresql_where=Organization.deleted_at.is_(None),
    sqlite_where=Organization.deleted_at.is_(None),
)
Index(
    "uq_organizations_domain_live",
    Organization.domain,
    unique=True,
    postgresql_where=Organization.deleted_at.is_(None),
    sqlite_where=Organization.deleted_at.is_(None),
)

# NULL organization ids never collide in the composite constraint
Index(
    "uq_roles_system_slug",
    Role.slug,
    unique=True,
    postgresql_where=Role.organization_id.is_(None),
    sqlite_where=Role.organization_id.is_(None),
)

# Same reasoning for the optional resource binding of an assignment
Index(
    "uq_user_roles_assignment",
    UserRole.user_id,
    UserRole.role_id,
    UserRole.scope,
    func.coalesce(UserRole.resource_type, ""),
    func.coalesce(UserRole.resource_id, ""),
    unique=True,
)
