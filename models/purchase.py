"""
Premium download / print purchase requests
Created by a user, moved to approved or denied by an admin, never deleted
"""
from datetime import datetime
import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON

from core.database import Base

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"
STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_DENIED)


class PurchaseRequest(Base):
    __tablename__ = "purchase_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    image_id = Column(String(36), ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    details = Column(JSON, default=dict)  # print size, frame, notes
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<PurchaseRequest(id={self.id}, image_id={self.image_id}, status={self.status})>"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "image_id": self.image_id,
            "status": self.status,
            "details": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
