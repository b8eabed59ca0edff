# In app/models.py
import datetime
import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)


class Company(Base):
    __tablename__ = "companies"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    cuit = Column(String, unique=True, index=True, nullable=False)
    address = Column(String, nullable=False)
    industry = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class UserCompany(Base):
    __tablename__ = "user_companies"
    __table_args__ = (UniqueConstraint("user_id", "company_id"),)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class Report(Base):
    __tablename__ = "reports"
    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    date = Column(Date, nullable=False)
    contact = Column(Text, default="")
    description = Column(Text, nullable=False)
    verification = Column(Text, default="")
    recommendations = Column(Text, default="")
    signature = Column(Text, default="")
    visit_confirmation = Column(Boolean, default=False)
    status = Column(String(16), nullable=False, default="draft")
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
    company = relationship("Company")
    observations = relationship(
        "Observation",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="Observation.created_at",
    )


class Observation(Base):
    __tablename__ = "observations"
    id = Column(String(36), primary_key=True, default=_uuid)
    report_id = Column(String(36), ForeignKey("reports.id", ondelete="CASCADE"), index=True, nullable=False)
    observation = Column(Text, nullable=False)
    risk_level = Column(String(16), nullable=False, default="low")
    image_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
    report = relationship("Report", back_populates="observations")
