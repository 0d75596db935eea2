"""
Subscriber model for the "stay connected" contact list.

OTP sign-in looks subscribers up by email; a verified OTP signup inserts one.
"""

from sqlalchemy import Column, Integer, String, DateTime, func
from app.core.database import Base


class Subscriber(Base):
    """
    A fan on the mailing list.

    Emails are stored lowercased and trimmed so lookups are case-insensitive.
    """
    __tablename__ = "stay_connected"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    tier = Column(String, nullable=True)  # Patron tier chosen at signup

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def first_name(self) -> str:
        """First word of the stored name, or empty string."""
        if not self.name:
            return ""
        parts = self.name.split()
        return parts[0] if parts else ""

    def __repr__(self):
        return f"<Subscriber(id={self.id}, email='{self.email}')>"
