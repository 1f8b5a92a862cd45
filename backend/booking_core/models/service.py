from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from .base import BaseModel


class Service(BaseModel):
    __tablename__ = "services"

    id               = Column(Integer, primary_key=True, index=True)
    provider_id      = Column(Integer, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    name             = Column(String, nullable=False)
    # Nullable on purpose: a service without a price cannot be booked, and
    # that must surface as an error rather than a silent zero.
    price            = Column(Numeric(10, 2), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    currency         = Column(String(3), nullable=False, default="usd")

    provider = relationship("Provider", back_populates="services")


class ServiceAddon(BaseModel):
    __tablename__ = "service_addons"

    id          = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    name        = Column(String, nullable=False)
    price       = Column(Numeric(10, 2), nullable=False)
    is_active   = Column(Boolean, nullable=False, default=True)

    provider = relationship("Provider", back_populates="addons")
