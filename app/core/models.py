from sqlalchemy import (
    Column,
    Date,
    ForeignKey,
    Integer,
    String,
    Numeric,
    Boolean,
    TIMESTAMP,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


# =========================
# User
# =========================
class User(Base):
    __tablename__ = "users_table"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    role = Column(String, nullable=False, server_default="user")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    conversations = relationship(
        "Conversation",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Conversation (chat front end)
# =========================
class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)

    owner_id = Column(
        Integer,
        ForeignKey("users_table.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    owner = relationship("User", back_populates="conversations")

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.id",
    )


class Message(Base):
    """
    One turn of a conversation.

    Assistant turns keep the full agent output in `payload`:
    generated SQL, every attempt of the repair loop, citations,
    forecast points and the step trace.
    """

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = Column(String, nullable=False)  # user / assistant
    content = Column(Text, nullable=False)
    path = Column(String, nullable=True)  # insight / exact / prediction
    status = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    conversation = relationship("Conversation", back_populates="messages")


# =========================
# Documents (Insight path corpus)
# =========================
class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)

    title = Column(String, nullable=False)
    source = Column(String, nullable=True)  # url, file name, wiki page...

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    chunks = relationship(
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.position",
    )


class DocumentChunk(Base):
    __tablename__ = "document_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)

    document_id = Column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    token_count = Column(Integer, nullable=False, default=0)

    document = relationship("Document", back_populates="chunks")


# =========================
# ETL: staging (RAW DATA LAYER)
# =========================
class SnapshotStaging(Base):
    """
    Raw rows exactly as they arrived from CSV/API.

    CSV/API → this table → transform → daily_changes_snapshot
    """

    __tablename__ = "snapshot_staging"

    id = Column(Integer, primary_key=True, autoincrement=True)

    row_hash = Column(String(64), nullable=False, unique=True, index=True)
    raw_payload = Column(JSON, nullable=False)
    source = Column(String, nullable=False, default="csv")

    # Filled by transform
    snapshot_date = Column(Date, nullable=True)
    entity = Column(String, nullable=True)
    metric = Column(String, nullable=True)
    value = Column(Numeric(18, 4), nullable=True)

    processed = Column(Boolean, default=False, index=True)
    error = Column(Text, nullable=True)  # why transform rejected the row
    loaded = Column(Boolean, default=False, index=True)

    ingested_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# ETL: clean layer (what the agent queries)
# =========================
class DailyChangesSnapshot(Base):
    """
    One value of one metric for one entity on one day.
    """

    __tablename__ = "daily_changes_snapshot"
    __table_args__ = (
        UniqueConstraint(
            "snapshot_date", "entity", "metric", name="uq_snapshot_day_entity_metric"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    snapshot_date = Column(Date, nullable=False, index=True)
    entity = Column(String, nullable=False, index=True)  # "Store 12", "EU-West"
    metric = Column(String, nullable=False, index=True)  # "revenue", "new_signups"
    value = Column(Numeric(18, 4), nullable=False)
    source = Column(String, nullable=True)

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
