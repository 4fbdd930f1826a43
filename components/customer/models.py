"""Customer model for the database."""

from sqlalchemy import Column, Integer, String, DateTime, func
from sqlalchemy.orm import relationship

from components.core.database import Base


class Customer(Base):
    """Cooperative member. Contact fields hold ciphertext."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(512), nullable=False, default="")  # Encrypted
    phone = Column(String(512), nullable=False, default="")  # Encrypted
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    # Relationship with Loans
    loans = relationship("Loan", back_populates="customer")
