from sqlalchemy import Boolean, Column, Integer, String
from sqlalchemy.orm import relationship

from .base import BaseModel


class Provider(BaseModel):
    __tablename__ = "providers"

    id            = Column(Integer, primary_key=True, index=True)
    display_name  = Column(String, nullable=False)
    # Internal/developer accounts bypass the platform-fee split entirely
    is_zero_fee   = Column(Boolean, nullable=False, default=False)
    # Connected payout account at the payment gateway
    gateway_account_id     = Column(String, nullable=True, unique=True, index=True)
    gateway_account_status = Column(String, nullable=False, default="pending")
    charges_enabled        = Column(Boolean, nullable=False, default=False)

    services = relationship("Service", back_populates="provider")
    addons   = relationship("ServiceAddon", back_populates="provider")
    bookings = relationship("Booking", back_populates="provider")

    def __repr__(self) -> str:
        return f"<Provider id={self.id} zero_fee={self.is_zero_fee} account={self.gateway_account_status}>"
