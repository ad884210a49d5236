from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, IdType


class PrincipalRole(Base):
    """Polymorphic grant of a role to any kind of principal."""

    __tablename__ = "principal_roles"
    __table_args__ = (
        UniqueConstraint(
            "principal_id",
            "principal_type",
            "role_id",
            name="uq_principal_roles_principal_role",
        ),
        Index("ix_principal_roles_principal", "principal_id", "principal_type"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    principal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    principal_type: Mapped[str] = mapped_column(String(125), nullable=False)
    role_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
