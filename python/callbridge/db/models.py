"""ORM mapping of the CRM tables the bridge reads and writes."""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from ..core.outcome import RecordingStatus

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    username = Column(String(150), unique=True)
    email = Column(String(255))
    status = Column(String(20), nullable=False, default="active")


class UserPhone(Base):
    __tablename__ = "user_phones"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    phone_number = Column(String(64), nullable=False, index=True)
    phone_type = Column(String(32))
    is_primary = Column(Boolean, nullable=False, default=False)


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True)
    name = Column("name_companies", String(255), nullable=False)


class PhoneNumberCompany(Base):
    __tablename__ = "phone_numbers_companies"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    phone_number = Column(String(64), nullable=False, index=True)
    phone_type = Column(String(32))


class Call(Base):
    __tablename__ = "calls"

    id = Column(Integer, primary_key=True)
    caller_number = Column(String(64))
    receiver_number = Column(String(64))
    status = Column(String(20), nullable=False)
    assigned_user_id = Column(Integer, ForeignKey("users.id"))
    answered_by_user_id = Column(Integer, ForeignKey("users.id"))
    caller_company_id = Column(Integer, ForeignKey("companies.id"))
    channel_id = Column(String(128), index=True)
    created_at = Column(DateTime, server_default=func.now())
    accepted_at = Column(DateTime)
    answered_at = Column(DateTime)
    ended_at = Column(DateTime)
    duration = Column(Integer)
    recording_url = Column(Text)
    recording_status = Column(String(20), nullable=False, default=RecordingStatus.ABSENT.value)
    recording_reason = Column(Text)
    notes = Column(Text)
