# =============================================================================
# RealtyVoice Agent - Lead Store
# =============================================================================
"""
SQLite (or any SQLAlchemy URL) storage for leads posted by the voice agent
and other site forms.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()[:limit]
    return value or None


class Lead(Base):
    """A prospective tenant/buyer routed to an agent or seller."""
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utcnow)

    agent_id = Column(String(64), nullable=False, index=True)
    property_id = Column(String(64), nullable=True)

    contact_name = Column(String(100), nullable=True)
    contact_phone = Column(String(20), nullable=True)
    contact_email = Column(String(100), nullable=True)
    message = Column(Text, nullable=False)
    source = Column(String(32), default="form")

    temperature = Column(String(16), default="warm")
    score = Column(Integer, default=50)
    status = Column(String(16), default="new")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "agent_id": self.agent_id,
            "property_id": self.property_id,
            "contact_name": self.contact_name,
            "contact_phone": self.contact_phone,
            "contact_email": self.contact_email,
            "message": self.message,
            "source": self.source,
            "temperature": self.temperature,
            "score": self.score,
            "status": self.status,
        }


class LeadDatabase:
    """Database handler for leads."""

    def __init__(self, database_url: str = "sqlite:///data/leads.db"):
        connect_args = {}
        poolclass = None
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
            poolclass = StaticPool
            db_path = database_url.split("///", 1)[-1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(database_url, connect_args=connect_args, poolclass=poolclass)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database initialized: {database_url}")

    def get_session(self) -> Session:
        return self.SessionLocal()

    def create_lead(self, lead_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a lead.

        Args:
            lead_data: Must contain agent_id and message; contact fields are
                trimmed to their column sizes.

        Returns:
            The stored lead as a dict
        """
        lead = Lead(
            agent_id=str(lead_data["agent_id"]),
            property_id=lead_data.get("property_id") or None,
            contact_name=_clip(lead_data.get("contact_name"), 100),
            contact_phone=_clip(lead_data.get("contact_phone"), 20),
            contact_email=_clip(lead_data.get("contact_email"), 100),
            message=str(lead_data["message"])[:1000],
            source=lead_data.get("source") or "form",
        )
        with self.get_session() as session:
            try:
                session.add(lead)
                session.commit()
                session.refresh(lead)
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error saving lead: {e}")
                raise
        logger.info(f"Created lead {lead.id} for agent {lead.agent_id} ({lead.source})")
        return lead.to_dict()

    def get_all_leads(
        self,
        agent_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Leads, newest first, optionally for one agent."""
        with self.get_session() as session:
            query = session.query(Lead)
            if agent_id:
                query = query.filter(Lead.agent_id == agent_id)
            leads = query.order_by(Lead.created_at.desc(), Lead.id.desc()).offset(offset).limit(limit).all()
            return [lead.to_dict() for lead in leads]

    def get_leads_count(self, agent_id: Optional[str] = None) -> int:
        with self.get_session() as session:
            query = session.query(Lead)
            if agent_id:
                query = query.filter(Lead.agent_id == agent_id)
            return query.count()
