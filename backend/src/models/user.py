from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from backend.src.db.base import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class FamilyMember(Base):
    """A person the account holder manages records for (the chat 'subject')."""
    __tablename__ = "family_members"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    full_name = Column(String, nullable=False)
    relationship = Column(String, default="self")

    # Hospital side identifiers, folded into the chat context when present
    hospital_code = Column(String, nullable=True)
    patient_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
