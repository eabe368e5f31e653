"""
All SQLAlchemy models of the report store in a single module.
Configurations and schedule settings are stored as JSON documents.
"""

from sqlalchemy import Boolean, Column, Index, Integer, JSON, String, Text, DateTime

from report_engine.database import Base


class SavedReportRow(Base):
    __tablename__ = "saved_reports"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    data_source_id = Column(String, index=True, nullable=False)
    configuration = Column(JSON, nullable=False)
    favorited = Column(Boolean, nullable=False, default=False)
    times_viewed = Column(Integer, nullable=False, default=0)
    last_generated_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ReportTemplateRow(Base):
    __tablename__ = "report_templates"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String, index=True, nullable=True)
    is_system = Column(Boolean, nullable=False, default=False)
    configuration = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ScheduledReportRow(Base):
    __tablename__ = "scheduled_reports"
    id = Column(String, primary_key=True)
    report_id = Column(String, index=True, nullable=False)
    report_name = Column(String, nullable=False, default="")
    schedule = Column(JSON, nullable=False)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), index=True, nullable=True)
    status = Column(String, nullable=False, default="active")
    error_message = Column(Text, nullable=True)
    created_by = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ReportHistoryRow(Base):
    __tablename__ = "report_history"
    id = Column(String, primary_key=True)
    report_id = Column(String, index=True, nullable=False)
    schedule_id = Column(String, index=True, nullable=True)
    report_name = Column(String, nullable=False, default="")
    generated_at = Column(DateTime(timezone=True), nullable=False)
    generated_by = Column(String, nullable=False)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    export_format = Column(String, nullable=False)
    delivery_method = Column(String, nullable=False)
    delivery_status = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)
    result_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_report_history_report_generated", "report_id", "generated_at"),
    )
