from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


class OitAllergen(Base):
    __tablename__ = "oit_allergens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    dose_logs: Mapped[list["OitDoseLog"]] = relationship(
        "OitDoseLog", back_populates="allergen", cascade="all, delete-orphan", passive_deletes=True
    )


class OitDoseLog(Base):
    __tablename__ = "oit_dose_logs"
    __table_args__ = (Index("ix_oit_dose_logs_logged", "logged_at", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    allergen_id: Mapped[int] = mapped_column(
        ForeignKey("oit_allergens.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False, index=True
    )
    dose_mg: Mapped[float] = mapped_column(Float, nullable=False)
    reaction: Mapped[str] = mapped_column(String(16), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logged_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    allergen: Mapped[OitAllergen] = relationship("OitAllergen", back_populates="dose_logs")
