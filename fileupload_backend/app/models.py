"""SQLAlchemy models.

Defines the database schema for users, collections, documents and chat
messages.  Models that hold uploaded files mix in ``UploadCarrier`` and
declare an ``UploadField`` beside the column storing the file name.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, ForeignKey, Text, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .carrier import UploadCarrier, UploadField
from .database import Base

class User(UploadCarrier, Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    avatar = Column(String(255), nullable=True)
    avatar_upload = UploadField("avatar")

    documents = relationship("Document", back_populates="owner", cascade="all, delete-orphan")
    collections = relationship("Collection", back_populates="owner", cascade="all, delete-orphan")

class Collection(Base):
    __tablename__ = "collections"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    owner = relationship("User", back_populates="collections")
    documents = relationship("Document", back_populates="collection")

class Document(UploadCarrier, Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)

    title = Column(String(255), nullable=False)
    original_filename = Column(String(255), nullable=True)
    content_type = Column(String(100), nullable=True)

    # stored file name, relative to <upload root>/document/attachment
    attachment = Column(String(255), nullable=True)
    attachment_upload = UploadField("attachment")

    upload_date = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    collection_id = Column(Integer, ForeignKey("collections.id", ondelete="SET NULL"), nullable=True)

    owner = relationship("User", back_populates="documents")
    collection = relationship("Collection", back_populates="documents")
    messages = relationship("ChatMessage", back_populates="document", cascade="all, delete-orphan")

class ChatMessage(UploadCarrier, Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=True)
    body = Column(Text, nullable=False)

    attachment = Column(String(255), nullable=True)
    attachment_upload = UploadField("attachment")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    document = relationship("Document", back_populates="messages")
