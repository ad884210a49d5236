from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, IdType


class PrincipalPermission(Base):
    """Direct permission grant that bypasses roles."""

    __tablename__ = "principal_permissions"
    __table_args__ = (
        UniqueConstraint(
            "principal_id",
            "principal_type",
            "permission_id",
            name="uq_principal_permissions_principal_permission",
        ),
        Index("ix_principal_permissions_principal", "principal_id", "principal_type"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    principal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    principal_type: Mapped[str] = mapped_column(String(125), nullable=False)
    permission_id: Mapped[int] = mapped_column(
        IdType,
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
