from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index, func
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class Interview(Base):
    __tablename__ = "interviews"

    id = Column(String(24), primary_key=True)
    candidate_id = Column(String(24), nullable=False, index=True)
    recruiter_id = Column(String(24), nullable=True, index=True)
    title = Column(String, nullable=False, default="Mock interview")
    category = Column(String, nullable=True)  # role, e.g. "Software Engineer"
    industry = Column(String, nullable=True)  # primary stack
    status = Column(String, nullable=False, default="scheduled")  # scheduled, in-progress, completed
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    stage_flow = Column(JSON, nullable=True)  # {stage, turn, current_question, topics_asked}
    responses = Column(JSON, nullable=True)  # list of {turn, question, answer, score?}
    ai_analysis = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False)  # user, assistant
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("ix_chat_messages_session_created", "session_id", "created_at"),)
