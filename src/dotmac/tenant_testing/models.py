"""
Central database models and the in-memory tenant representation.
"""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class CentralBase(DeclarativeBase):
    """Declarative base for tables living in the central database."""

    pass


class TenantModel(CentralBase):
    """Tenant registry row."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    database: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    def __repr__(self) -> str:
        return f"<TenantModel(id={self.id!r}, database={self.database!r})>"


@dataclass
class Tenant:
    """A tenant and the handle to its physical database."""

    id: str
    name: str
    database: str
    domain: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, model: TenantModel) -> "Tenant":
        return cls(
            id=model.id,
            name=model.name,
            database=model.database,
            domain=model.domain,
            data=dict(model.data or {}),
        )

    def snapshot(self) -> "Tenant":
        """Independent copy; later mutation of this tenant does not leak into it."""
        return copy.deepcopy(self)

    def attributes(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "database": self.database,
            "domain": self.domain,
            "data": dict(self.data),
        }

    @property
    def tenant_key(self) -> str:
        return self.id
