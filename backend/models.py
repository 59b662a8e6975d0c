from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum


class TransactionType(str, Enum):
    DISBURSEMENT = "disbursement"
    EXPENSE = "expense"
    REVENUE = "revenue"


# ============================================
# PROJECT MODELS
# ============================================
class ProjectCreate(BaseModel):
    title: str
    description: str
    category: Optional[str] = None
    location: Optional[str] = None
    requested_amount: float = Field(..., ge=0)
    beneficiary_id: Optional[str] = None  # required when an admin creates on behalf of a beneficiary


class ProjectUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    requested_amount: Optional[float] = Field(default=None, ge=0)


class ProjectDecision(BaseModel):
    reason: Optional[str] = None


class TrancheCreate(BaseModel):
    milestone_id: str
    amount: float = Field(..., gt=0)


# ============================================
# TRANSACTION MODELS
# ============================================
class TransactionCreate(BaseModel):
    project_id: str
    type: TransactionType
    amount: float = Field(..., gt=0)
    category: Optional[str] = None
    description: Optional[str] = None
    date: Optional[datetime] = None
    proof_url: Optional[str] = None


class TransactionUpdate(BaseModel):
    # type, amount, date and balance are immutable
    category: Optional[str] = None
    description: Optional[str] = None
    proof_url: Optional[str] = None


# ============================================
# MILESTONE MODELS
# ============================================
class MilestoneCreate(BaseModel):
    project_id: str
    title: str
    description: Optional[str] = None
    target_date: Optional[datetime] = None
    tranche_amount: Optional[float] = Field(default=None, ge=0)


class EvidenceItem(BaseModel):
    url: str
    description: Optional[str] = None


class EvidenceSubmission(BaseModel):
    evidence: List[EvidenceItem]


class MilestoneDecision(BaseModel):
    reason: Optional[str] = None


# ============================================
# FUNDING REQUEST MODELS
# ============================================
class BudgetLine(BaseModel):
    label: str
    amount: float = Field(..., ge=0)


class FundingRequestCreate(BaseModel):
    project_id: str
    requested_amount: float = Field(..., gt=0)
    purpose: Optional[str] = None
    budget_breakdown: List[BudgetLine] = []


class FundingDecision(BaseModel):
    note: Optional[str] = None


# ============================================
# PLEDGE MODELS
# ============================================
class PledgeCreate(BaseModel):
    project_id: str
    amount: float = Field(..., gt=0)
