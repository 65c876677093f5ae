"""Scan, finding and queue-job persistence models."""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, ForeignKey, Enum, Float, Boolean
from sqlalchemy.orm import relationship
import enum
import uuid

from app.models.base import Base, utcnow
from app.services.scan_state import ScanStatus
from app.services.wcag.types import Category, FindingSource, FixEffort, LegalRisk, Severity, WCAGLevel


def _new_scan_id() -> str:
    return str(uuid.uuid4())


class ScanJobState(enum.Enum):
    queued = "queued"
    claimed = "claimed"
    processing = "processing"
    done = "done"
    failed = "failed"


class Scan(Base):
    """One accessibility scan of a site; mirrors the live progress record."""
    __tablename__ = "scans"

    id = Column(String(36), primary_key=True, default=_new_scan_id)
    url = Column(String(2048), nullable=False, index=True)
    status = Column(Enum(ScanStatus), default=ScanStatus.queued, nullable=False, index=True)
    max_pages = Column(Integer, default=5, nullable=False)
    max_duration_seconds = Column(Integer, default=300, nullable=False)

    # Progress mirror
    progress = Column(Integer, default=0, nullable=False)
    progress_message = Column(String(255), nullable=True)
    current_page = Column(String(2048), nullable=True)
    pages_discovered = Column(Integer, default=0, nullable=False)
    pages_crawled = Column(Integer, default=0, nullable=False)
    errors_json = Column(JSON, default=list)
    estimated_completion = Column(String(64), nullable=True)

    # Scores (0-100)
    overall_score = Column(Integer, nullable=True)
    perceivable_score = Column(Integer, nullable=True)
    operable_score = Column(Integer, nullable=True)
    understandable_score = Column(Integer, nullable=True)
    robust_score = Column(Integer, nullable=True)
    wcag_a_compliant = Column(Boolean, nullable=True)
    wcag_aa_compliant = Column(Boolean, nullable=True)
    wcag_aaa_compliant = Column(Boolean, nullable=True)
    score_improvement = Column(Integer, default=0)
    score_direction = Column(String(16), default="stable")

    # Counters
    total_violations = Column(Integer, default=0, nullable=False)
    critical_issues = Column(Integer, default=0, nullable=False)
    serious_issues = Column(Integer, default=0, nullable=False)
    moderate_issues = Column(Integer, default=0, nullable=False)
    minor_issues = Column(Integer, default=0, nullable=False)
    quick_wins = Column(Integer, default=0, nullable=False)

    # Results
    canonical_pages_json = Column(JSON, nullable=True)
    report_json = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    findings = relationship(
        "ScanFinding",
        back_populates="scan",
        cascade="all, delete-orphan",
        order_by="ScanFinding.ordinal",
    )
    jobs = relationship("ScanJob", back_populates="scan", cascade="all, delete-orphan")


class ScanFinding(Base):
    """A normalized finding persisted for a scan."""
    __tablename__ = "scan_findings"

    id = Column(String(128), primary_key=True)
    scan_id = Column(String(36), ForeignKey("scans.id"), nullable=False, index=True)
    ordinal = Column(Integer, nullable=False, default=0)

    source = Column(Enum(FindingSource), nullable=False)
    rule_id = Column(String(100), nullable=False, index=True)
    wcag_criterion = Column(String(16), nullable=False)
    wcag_level = Column(Enum(WCAGLevel), nullable=False)
    category = Column(Enum(Category), nullable=False)
    severity = Column(Enum(Severity), nullable=False)

    element_type = Column(String(64), nullable=True)
    selector = Column(Text, nullable=True)
    html = Column(Text, nullable=True)
    page_url = Column(String(2048), nullable=False)

    legal_risk = Column(Enum(LegalRisk), nullable=False)
    quick_win = Column(Boolean, default=False, nullable=False)
    estimated_fix_minutes = Column(Integer, default=0, nullable=False)
    estimated_fix_time = Column(String(64), nullable=True)
    confidence = Column(Float, default=1.0, nullable=False)

    remediation_description = Column(Text, nullable=True)
    remediation_code = Column(Text, nullable=True)
    remediation_effort = Column(Enum(FixEffort), nullable=True)

    message = Column(Text, nullable=True)
    business_impact = Column(Text, nullable=True)
    user_impact = Column(Text, nullable=True)
    false_positive = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    scan = relationship("Scan", back_populates="findings")


class ScanJob(Base):
    """Durable queue entry claimed by scan workers."""
    __tablename__ = "scan_jobs"

    id = Column(Integer, primary_key=True, index=True)
    scan_id = Column(String(36), ForeignKey("scans.id"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    max_pages = Column(Integer, default=5, nullable=False)
    max_duration_seconds = Column(Integer, default=300, nullable=False)
    state = Column(Enum(ScanJobState), default=ScanJobState.queued, nullable=False, index=True)
    priority = Column(Integer, default=5, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    worker_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    claimed_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    scan = relationship("Scan", back_populates="jobs")
