from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from .base import BaseModel


class Client(BaseModel):
    """Registered client identity. Profile data lives with the auth service."""

    __tablename__ = "clients"

    id        = Column(Integer, primary_key=True, index=True)
    email     = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)

    bookings = relationship("Booking", back_populates="client")
