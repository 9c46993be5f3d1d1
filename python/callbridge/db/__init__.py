"""Persistence gateway over the relational store."""
from .models import Base, Call, Company, PhoneNumberCompany, User, UserPhone
from .gateway import CallStatusRow, CompanyRef, PersistenceGateway, UserRef

__all__ = [
    "Base",
    "Call",
    "Company",
    "PhoneNumberCompany",
    "User",
    "UserPhone",
    "CallStatusRow",
    "CompanyRef",
    "PersistenceGateway",
    "UserRef",
]
