from sqlalchemy import Column, String, DateTime, Boolean
from datetime import datetime

from database import Base

class User(Base):
    """Profile fields mirrored from the identity provider"""
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)  # identity provider uid
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(255), nullable=True)
    photo_url = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_login = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_email_verified = Column(Boolean, default=False, nullable=False)
