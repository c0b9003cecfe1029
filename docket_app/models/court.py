# docket_app/models/court.py
"""
Court reference data, cases, hearing activities and judge assignments.
"""

import enum

from sqlalchemy import Enum, Index, UniqueConstraint

from .base import BaseModel, db


class CourtType(str, enum.Enum):
    """Court levels recognized in daily returns."""

    SC = "SC"
    ELC = "ELC"
    ELRC = "ELRC"
    KC = "KC"
    SCC = "SCC"
    COA = "COA"
    MC = "MC"
    HC = "HC"
    TC = "TC"


class CaseStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    PENDING = "PENDING"
    TRANSFERRED = "TRANSFERRED"
    DELETED = "DELETED"


class CustodyStatus(str, enum.Enum):
    IN_CUSTODY = "IN_CUSTODY"
    ON_BAIL = "ON_BAIL"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class Court(BaseModel):
    """A court station; ``code`` is the natural key used by the importer."""

    __tablename__ = "courts"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, unique=True)
    code = db.Column(db.String(50), nullable=False, unique=True, index=True)
    court_type = db.Column(Enum(CourtType, name="court_type_enum"), nullable=False, default=CourtType.TC)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Court {self.code} {self.name}>"


class CaseType(BaseModel):
    __tablename__ = "case_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(50), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<CaseType {self.code}>"


class Judge(BaseModel):
    """Judicial officer. Importer-created stubs start inactive."""

    __tablename__ = "judges"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(255), nullable=False)
    normalized_name = db.Column(db.String(255), nullable=False, index=True)
    first_name = db.Column(db.String(120), nullable=True)
    last_name = db.Column(db.String(120), nullable=True)
    title = db.Column(db.String(50), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=False)

    assignments = db.relationship("CaseJudgeAssignment", back_populates="judge")

    def __repr__(self):
        return f"<Judge {self.full_name}>"


class Case(BaseModel):
    """A court proceeding, unique per (case number, court name)."""

    __tablename__ = "cases"

    id = db.Column(db.Integer, primary_key=True)
    case_number = db.Column(db.String(100), nullable=False)
    court_name = db.Column(db.String(255), nullable=False)
    court_id = db.Column(db.Integer, db.ForeignKey("courts.id"), nullable=False, index=True)
    case_type_id = db.Column(db.Integer, db.ForeignKey("case_types.id"), nullable=False, index=True)
    caseid_type = db.Column(db.String(20), nullable=True)
    caseid_no = db.Column(db.String(50), nullable=True)
    filed_date = db.Column(db.Date, nullable=True)
    original_court = db.Column(db.String(255), nullable=True)
    original_code = db.Column(db.String(50), nullable=True)
    original_number = db.Column(db.String(50), nullable=True)
    original_year = db.Column(db.Integer, nullable=True)
    status = db.Column(Enum(CaseStatus, name="case_status_enum"), nullable=False, default=CaseStatus.ACTIVE)

    # Party counts
    male_applicants = db.Column(db.Integer, nullable=False, default=0)
    female_applicants = db.Column(db.Integer, nullable=False, default=0)
    organization_applicants = db.Column(db.Integer, nullable=False, default=0)
    male_defendants = db.Column(db.Integer, nullable=False, default=0)
    female_defendants = db.Column(db.Integer, nullable=False, default=0)
    organization_defendants = db.Column(db.Integer, nullable=False, default=0)
    has_legal_representation = db.Column(db.Boolean, nullable=False, default=False)

    total_activities = db.Column(db.Integer, nullable=False, default=0)
    last_activity_date = db.Column(db.Date, nullable=True, index=True)

    court = db.relationship("Court")
    case_type = db.relationship("CaseType")
    activities = db.relationship("CaseActivity", back_populates="case", order_by="CaseActivity.activity_date")
    judge_assignments = db.relationship("CaseJudgeAssignment", back_populates="case")

    __table_args__ = (UniqueConstraint("case_number", "court_name", name="uq_cases_number_court"),)

    def __repr__(self):
        return f"<Case {self.case_number} @ {self.court_name}>"


class CaseActivity(BaseModel):
    """One hearing event recorded against a case by an import batch."""

    __tablename__ = "case_activities"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.Integer, db.ForeignKey("cases.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("import_batches.id"), nullable=False, index=True)
    row_number = db.Column(db.Integer, nullable=True)
    activity_date = db.Column(db.Date, nullable=False)
    activity_type = db.Column(db.String(255), nullable=True)
    outcome = db.Column(db.String(255), nullable=False)
    reason_for_adjournment = db.Column(db.String(255), nullable=True)
    next_hearing_date = db.Column(db.Date, nullable=True)
    primary_judge_id = db.Column(db.Integer, db.ForeignKey("judges.id"), nullable=False, index=True)
    # Raw judge slot strings, kept for audit/display only.
    raw_judge_names = db.Column(db.JSON, nullable=False, default=list)
    custody_status = db.Column(
        Enum(CustodyStatus, name="custody_status_enum"),
        nullable=False,
        default=CustodyStatus.NOT_APPLICABLE,
    )
    custody_count = db.Column(db.Integer, nullable=False, default=0)
    applicant_witnesses = db.Column(db.Integer, nullable=False, default=0)
    defendant_witnesses = db.Column(db.Integer, nullable=False, default=0)
    legal_representation = db.Column(db.Boolean, nullable=False, default=False)
    other_details = db.Column(db.Text, nullable=True)
    # SHA-256 of the activity content; a re-applied row matches on (case_id, row_fingerprint).
    row_fingerprint = db.Column(db.String(64), nullable=True)

    case = db.relationship("Case", back_populates="activities")
    primary_judge = db.relationship("Judge")
    batch = db.relationship("ImportBatch", back_populates="activities")

    __table_args__ = (
        Index("idx_case_activities_fingerprint", "case_id", "row_fingerprint"),
        Index("idx_case_activities_case_date", "case_id", "activity_date"),
    )


class CaseJudgeAssignment(BaseModel):
    __tablename__ = "case_judge_assignments"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.Integer, db.ForeignKey("cases.id"), nullable=False, index=True)
    judge_id = db.Column(db.Integer, db.ForeignKey("judges.id"), nullable=False, index=True)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    case = db.relationship("Case", back_populates="judge_assignments")
    judge = db.relationship("Judge", back_populates="assignments")

    __table_args__ = (UniqueConstraint("case_id", "judge_id", name="uq_case_judge_assignment"),)
