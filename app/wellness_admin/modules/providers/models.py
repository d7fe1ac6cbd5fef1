from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.wellness_admin.models import Base


class Provider(Base):
    """
    Provider directory row. List-valued columns (telephone, services, email,
    inferred_categories) hold JSON-encoded string arrays; coordinates holds a
    JSON object {"lat": .., "lng": ..}.
    """

    __tablename__ = "providers"
    __table_args__ = (Index("idx_providers_provider_name", "provider_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    provider_name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    physical_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    telephone: Mapped[str | None] = mapped_column(Text, nullable=True)
    services: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    speciality: Mapped[str | None] = mapped_column(Text, nullable=True)
    inferred_categories: Mapped[str | None] = mapped_column(Text, nullable=True)
    coordinates: Mapped[str | None] = mapped_column(Text, nullable=True)
    formatted_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
