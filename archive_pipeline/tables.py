"""ORM tables for uploaded documents and their pages."""

from sqlalchemy import (
    TIMESTAMP,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_file = Column(String, nullable=False, unique=True)  # dedup key
    original_zip = Column(String, nullable=False)
    total_pages = Column(Integer, nullable=False, default=0)
    processed_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    pages = relationship(
        "Page",
        back_populates="document",
        order_by="Page.page_number",
    )


class Page(Base):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("document_id", "page_number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)  # 1-based
    content_text = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    document = relationship("Document", back_populates="pages")
