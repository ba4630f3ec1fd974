"""
SQLAlchemy models for the fundraising graph.

Tables: projects, investment_relationships, crawl_states

The investor → project graph is kept as two flat tables addressed by integer
ids; an edge never holds object references to its endpoints beyond the FKs.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, BigInteger, Float, Boolean, DateTime, Text,
    ForeignKey, Index, JSON,
)
from sqlalchemy.orm import relationship, declarative_base


def _utcnow():
    return datetime.now(timezone.utc)


Base = declarative_base()


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_name = Column(String(255), nullable=False)
    project_link = Column(String(1000), unique=True, nullable=False)  # canonical link, dedup key
    description = Column(Text, nullable=True)
    logo = Column(String(1000), nullable=True)
    social_links = Column(JSON(none_as_null=True), nullable=True)   # {"website": url, "twitter": url, ...}
    team_members = Column(JSON(none_as_null=True), nullable=True)   # [{name, position, avatar_url, profile_url}]

    # Funding snapshot (listing-sourced projects only)
    round = Column(String(100), nullable=True)
    amount = Column(String(100), nullable=True)
    formatted_amount = Column(Float, nullable=True)
    valuation = Column(String(100), nullable=True)
    formatted_valuation = Column(Float, nullable=True)
    date = Column(String(100), nullable=True)
    funded_at = Column(BigInteger, nullable=True)  # epoch ms

    # Crawl bookkeeping
    is_initial = Column(Boolean, default=False, nullable=False)
    original_page_number = Column(Integer, nullable=True)
    detail_fetched_at = Column(BigInteger, nullable=True)  # epoch ms
    detail_failures_number = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    investments_given = relationship(
        "InvestmentRelationship",
        foreign_keys="InvestmentRelationship.investor_project_id",
        back_populates="investor_project",
    )
    investments_received = relationship(
        "InvestmentRelationship",
        foreign_keys="InvestmentRelationship.funded_project_id",
        back_populates="funded_project",
    )

    __table_args__ = (
        Index("ix_projects_initial_page", "is_initial", "original_page_number"),
        Index("ix_projects_failures", "detail_failures_number"),
        Index("ix_projects_funded_at", "funded_at"),
    )


class InvestmentRelationship(Base):
    __tablename__ = "investment_relationships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    investor_project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    funded_project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    round = Column(String(100), nullable=True)
    amount = Column(String(100), nullable=True)
    formatted_amount = Column(Float, nullable=True)
    valuation = Column(String(100), nullable=True)
    formatted_valuation = Column(Float, nullable=True)
    date = Column(BigInteger, nullable=True)  # epoch ms
    lead = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    investor_project = relationship(
        "Project", foreign_keys=[investor_project_id], back_populates="investments_given",
    )
    funded_project = relationship(
        "Project", foreign_keys=[funded_project_id], back_populates="investments_received",
    )

    __table_args__ = (
        Index("ix_relationships_funded", "funded_project_id"),
        Index("ix_relationships_investor", "investor_project_id"),
    )


class CrawlState(Base):
    """One row per crawl type; status=running is the mutual-exclusion gate."""
    __tablename__ = "crawl_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), unique=True, nullable=False, index=True)  # full, quick, detail, detail2, spare
    status = Column(String(20), default="idle", nullable=False)  # idle, running, completed, failed
    last_update_time = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    other_info = Column(JSON(none_as_null=True), nullable=True)  # serialized CrawlProgress
