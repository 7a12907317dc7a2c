"""
PIN-gated collections and the images they own
Image files live in object storage; rows keep the storage path and public url
"""
from datetime import datetime
import uuid

from sqlalchemy import Column, String, Text, DateTime, ForeignKey

from core.database import Base


class Collection(Base):
    __tablename__ = "collections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    pin_hash = Column(String(255), nullable=False)  # bcrypt, compared server-side only
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Collection(id={self.id}, title={self.title})>"

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Image(Base):
    __tablename__ = "images"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    collection_id = Column(String(36), ForeignKey("collections.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    path = Column(Text, nullable=False)  # storage key
    url = Column(Text, nullable=False)   # long-lived public url
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Image(id={self.id}, collection_id={self.collection_id})>"

    def to_dict(self):
        return {
            "id": self.id,
            "collection_id": self.collection_id,
            "title": self.title,
            "description": self.description,
            "path": self.path,
            "url": self.url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
