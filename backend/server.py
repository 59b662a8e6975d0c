from fastapi import FastAPI, APIRouter, Request, status, Depends, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional, Any
from datetime import datetime
import logging

from config import settings
from database import get_db, get_transaction_client, close_client, ensure_indexes
from models import (
    ProjectCreate, ProjectUpdate, ProjectDecision, TrancheCreate,
    TransactionCreate, TransactionUpdate,
    MilestoneCreate, EvidenceSubmission, MilestoneDecision,
    FundingRequestCreate, FundingDecision,
    PledgeCreate
)
from auth import get_current_user
from audit_service import AuditService
from permissions import permission_checker
from core.documents import serialize_doc
from core.errors import (
    NotFoundError,
    ForbiddenError,
    ValidationFailure,
    ConcurrentModificationError
)
from core.state_machine import InvalidTransitionError
from core.ledger import LedgerReconciler
from core.project_service import ProjectService
from core.transaction_recorder import TransactionRecorder
from core.milestone_engine import MilestoneApprovalEngine
from core.funding_engine import FundingRequestApprovalEngine
from core.kpi_aggregator import KPIAggregator
from core.pledge_service import PledgeService

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(
    title="Aid Disbursement Ledger",
    version="1.0.0",
    description="Project ledger, milestone tranches and funding request approvals"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


def ok(data: Any) -> dict:
    return {"success": True, "data": data}


def fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


# ============================================
# SERVICE DEPENDENCIES
# ============================================

def get_project_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> ProjectService:
    return ProjectService(db)


def get_recorder(
    db: AsyncIOMotorDatabase = Depends(get_db),
    client: Optional[AsyncIOMotorClient] = Depends(get_transaction_client)
) -> TransactionRecorder:
    return TransactionRecorder(db, client)


def get_milestone_engine(
    db: AsyncIOMotorDatabase = Depends(get_db),
    client: Optional[AsyncIOMotorClient] = Depends(get_transaction_client)
) -> MilestoneApprovalEngine:
    return MilestoneApprovalEngine(db, client)


def get_funding_engine(
    db: AsyncIOMotorDatabase = Depends(get_db),
    client: Optional[AsyncIOMotorClient] = Depends(get_transaction_client)
) -> FundingRequestApprovalEngine:
    return FundingRequestApprovalEngine(db, client, enforce_ceiling=settings.enforce_disbursement_ceiling)


def get_kpi_aggregator(db: AsyncIOMotorDatabase = Depends(get_db)) -> KPIAggregator:
    return KPIAggregator(db)


def get_pledge_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> PledgeService:
    return PledgeService(db)


# ============================================
# ERROR MAPPING
# ============================================

@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return fail(status.HTTP_400_BAD_REQUEST, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    return fail(status.HTTP_400_BAD_REQUEST, details or "Invalid request")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(ForbiddenError)
async def forbidden_handler(request: Request, exc: ForbiddenError):
    return fail(status.HTTP_403_FORBIDDEN, exc.message)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return fail(status.HTTP_404_NOT_FOUND, exc.message)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return fail(status.HTTP_409_CONFLICT, exc.message)


@app.exception_handler(ConcurrentModificationError)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError):
    return fail(status.HTTP_409_CONFLICT, exc.message)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return fail(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


# ============================================
# PROJECT ENDPOINTS
# ============================================

@api_router.post("/projects", status_code=status.HTTP_201_CREATED)
async def create_project(
    project_data: ProjectCreate,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    """Create project (beneficiary for themselves, admin on behalf of a beneficiary)"""
    project = await projects.create_project(project_data.dict(), current_user)
    return ok(serialize_doc(project))


@api_router.get("/projects")
async def list_projects(
    status_filter: Optional[str] = Query(None, alias="status"),
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    result = await projects.list_projects(status_filter, category, search, page, limit)
    return ok({
        "projects": [serialize_doc(p) for p in result["projects"]],
        "pagination": result["pagination"]
    })


@api_router.get("/projects/mine")
async def my_projects(
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    result = await projects.my_projects(current_user)
    return ok([serialize_doc(p) for p in result])


@api_router.get("/projects/{project_id}")
async def get_project(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    project = await projects.get_project(project_id)
    return ok(serialize_doc(await projects.with_derived_totals(project)))


@api_router.put("/projects/{project_id}")
async def update_project(
    project_id: str,
    project_data: ProjectUpdate,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    """Update project (owning beneficiary or admin)"""
    project = await projects.update_project(project_id, project_data.dict(exclude_unset=True), current_user)
    return ok(serialize_doc(project))


@api_router.delete("/projects/{project_id}")
async def delete_project(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    """Delete project (owning beneficiary or admin). Children are not deleted."""
    await projects.delete_project(project_id, current_user)
    return ok({"id": project_id, "deleted": True})


@api_router.patch("/projects/{project_id}/approve")
async def approve_project(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    """Approve project (Admin only)"""
    return ok(serialize_doc(await projects.approve_project(project_id, current_user)))


@api_router.patch("/projects/{project_id}/reject")
async def reject_project(
    project_id: str,
    decision: Optional[ProjectDecision] = None,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    """Reject project (Admin only)"""
    reason = decision.reason if decision else None
    return ok(serialize_doc(await projects.reject_project(project_id, current_user, reason)))


@api_router.post("/projects/{project_id}/tranches", status_code=status.HTTP_201_CREATED)
async def add_tranche(
    project_id: str,
    tranche_data: TrancheCreate,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service)
):
    """Create a pending tranche tied to a milestone (Admin only)"""
    tranche = await projects.add_tranche(project_id, tranche_data.dict(), current_user)
    return ok(serialize_doc(tranche))


@api_router.get("/projects/{project_id}/kpis")
async def project_kpis(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    kpis: KPIAggregator = Depends(get_kpi_aggregator)
):
    return ok(await kpis.project_kpis(project_id))


@api_router.get("/projects/{project_id}/analytics")
async def project_analytics(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    kpis: KPIAggregator = Depends(get_kpi_aggregator)
):
    analytics = await kpis.project_analytics(project_id)
    analytics["recent_transactions"] = [serialize_doc(t) for t in analytics["recent_transactions"]]
    return ok(analytics)


@api_router.get("/projects/{project_id}/transactions")
async def project_transactions(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    recorder: TransactionRecorder = Depends(get_recorder)
):
    transactions = await recorder.list_for_project(project_id)
    return ok([serialize_doc(t) for t in transactions])


@api_router.get("/projects/{project_id}/milestones")
async def project_milestones(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    await projects.get_project(project_id)
    milestones = await engine.list_milestones(project_id=project_id)
    return ok([serialize_doc(m) for m in milestones])


@api_router.get("/projects/{project_id}/ledger/reconcile")
async def reconcile_ledger(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Compare stored balance snapshots with a chronological replay (Admin only)"""
    permission_checker.check_admin_role(current_user)
    await ProjectService(db).get_project(project_id)
    report = await LedgerReconciler(db).reconcile(project_id)
    return ok(serialize_doc(report))


@api_router.get("/projects/{project_id}/audit-logs")
async def project_audit_logs(
    project_id: str,
    entity_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    permission_checker.check_admin_role(current_user)
    logs = await AuditService(db).get_audit_logs(project_id=project_id, entity_type=entity_type, limit=limit)
    return ok(logs)


# ============================================
# TRANSACTION ENDPOINTS
# ============================================

@api_router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    transaction_data: TransactionCreate,
    current_user: dict = Depends(get_current_user),
    recorder: TransactionRecorder = Depends(get_recorder)
):
    data = transaction_data.dict()
    data["type"] = transaction_data.type.value
    transaction = await recorder.record(data, current_user)
    return ok(serialize_doc(transaction))


@api_router.get("/transactions")
async def list_transactions(
    project_id: Optional[str] = None,
    type_filter: Optional[str] = Query(None, alias="type"),
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    recorder: TransactionRecorder = Depends(get_recorder)
):
    result = await recorder.list_transactions(current_user, project_id, type_filter, category, page, limit)
    return ok({
        "transactions": [serialize_doc(t) for t in result["transactions"]],
        "pagination": result["pagination"]
    })


@api_router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    current_user: dict = Depends(get_current_user),
    recorder: TransactionRecorder = Depends(get_recorder)
):
    return ok(serialize_doc(await recorder.get_transaction(transaction_id)))


@api_router.put("/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    update_data: TransactionUpdate,
    current_user: dict = Depends(get_current_user),
    recorder: TransactionRecorder = Depends(get_recorder)
):
    transaction = await recorder.update_transaction(
        transaction_id, update_data.dict(exclude_unset=True), current_user
    )
    return ok(serialize_doc(transaction))


@api_router.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    current_user: dict = Depends(get_current_user),
    recorder: TransactionRecorder = Depends(get_recorder)
):
    """Delete transaction (Admin only). Later balance snapshots are not recomputed."""
    await recorder.delete_transaction(transaction_id, current_user)
    return ok({"id": transaction_id, "deleted": True})


# ============================================
# MILESTONE ENDPOINTS
# ============================================

@api_router.post("/milestones", status_code=status.HTTP_201_CREATED)
async def create_milestone(
    milestone_data: MilestoneCreate,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    milestone = await engine.create_milestone(milestone_data.dict(), current_user)
    return ok(serialize_doc(milestone))


@api_router.get("/milestones")
async def list_milestones(
    project_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    milestones = await engine.list_milestones(project_id, status_filter)
    return ok([serialize_doc(m) for m in milestones])


@api_router.get("/milestones/{milestone_id}")
async def get_milestone(
    milestone_id: str,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    return ok(serialize_doc(await engine.get_milestone(milestone_id)))


@api_router.patch("/milestones/{milestone_id}/start")
async def start_milestone(
    milestone_id: str,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    return ok(serialize_doc(await engine.start(milestone_id, current_user)))


@api_router.post("/milestones/{milestone_id}/evidence")
async def submit_evidence(
    milestone_id: str,
    submission: EvidenceSubmission,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    """Replace the milestone's evidence and mark it evidence_submitted"""
    evidence = [item.dict() for item in submission.evidence]
    return ok(serialize_doc(await engine.submit_evidence(milestone_id, evidence, current_user)))


def _milestone_approval_result(result: dict) -> dict:
    release = result["release"]
    return {
        "milestone": serialize_doc(result["milestone"]),
        "release": {
            "tranche": serialize_doc(release["tranche"]),
            "transaction": serialize_doc(release["transaction"])
        } if release else None
    }


@api_router.patch("/milestones/{milestone_id}/approve")
async def approve_milestone(
    milestone_id: str,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    """Approve milestone and release its tranche (Admin only)"""
    return ok(_milestone_approval_result(await engine.approve(milestone_id, current_user)))


@api_router.patch("/milestones/{milestone_id}/reject")
async def reject_milestone(
    milestone_id: str,
    decision: Optional[MilestoneDecision] = None,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    reason = decision.reason if decision else None
    return ok(serialize_doc(await engine.reject(milestone_id, current_user, reason)))


@api_router.patch("/milestones/{milestone_id}/reopen")
async def reopen_milestone(
    milestone_id: str,
    decision: Optional[MilestoneDecision] = None,
    current_user: dict = Depends(get_current_user),
    engine: MilestoneApprovalEngine = Depends(get_milestone_engine)
):
    reason = decision.reason if decision else None
    return ok(serialize_doc(await engine.reopen(milestone_id, current_user, reason)))


# ============================================
# FUNDING REQUEST ENDPOINTS
# ============================================

def _funding_result(result: dict) -> dict:
    return {
        "funding_request": serialize_doc(result["funding_request"]),
        "transaction": serialize_doc(result["transaction"])
    }


@api_router.post("/funding-requests", status_code=status.HTTP_201_CREATED)
async def create_funding_request(
    request_data: FundingRequestCreate,
    current_user: dict = Depends(get_current_user),
    engine: FundingRequestApprovalEngine = Depends(get_funding_engine)
):
    request = await engine.create_request(request_data.dict(), current_user)
    return ok(serialize_doc(request))


@api_router.get("/funding-requests")
async def list_funding_requests(
    project_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    engine: FundingRequestApprovalEngine = Depends(get_funding_engine)
):
    result = await engine.list_requests(current_user, status_filter, project_id, page, limit)
    return ok({
        "funding_requests": [serialize_doc(r) for r in result["funding_requests"]],
        "pagination": result["pagination"]
    })


@api_router.get("/funding-requests/{request_id}")
async def get_funding_request(
    request_id: str,
    current_user: dict = Depends(get_current_user),
    engine: FundingRequestApprovalEngine = Depends(get_funding_engine)
):
    return ok(serialize_doc(await engine.get_request(request_id)))


@api_router.patch("/funding-requests/{request_id}/approve")
async def approve_funding_request(
    request_id: str,
    decision: Optional[FundingDecision] = None,
    current_user: dict = Depends(get_current_user),
    engine: FundingRequestApprovalEngine = Depends(get_funding_engine)
):
    """Approve and disburse the requested amount (Admin only)"""
    note = decision.note if decision else None
    return ok(_funding_result(await engine.approve(request_id, current_user, note)))


@api_router.patch("/funding-requests/{request_id}/reject")
async def reject_funding_request(
    request_id: str,
    decision: Optional[FundingDecision] = None,
    current_user: dict = Depends(get_current_user),
    engine: FundingRequestApprovalEngine = Depends(get_funding_engine)
):
    note = decision.note if decision else None
    return ok(_funding_result(await engine.reject(request_id, current_user, note)))


@api_router.patch("/funding-requests/{request_id}/reopen")
async def reopen_funding_request(
    request_id: str,
    decision: Optional[FundingDecision] = None,
    current_user: dict = Depends(get_current_user),
    engine: FundingRequestApprovalEngine = Depends(get_funding_engine)
):
    note = decision.note if decision else None
    return ok(_funding_result(await engine.reopen(request_id, current_user, note)))


# ============================================
# PLEDGE ENDPOINTS
# ============================================

@api_router.post("/pledges", status_code=status.HTTP_201_CREATED)
async def create_pledge(
    pledge_data: PledgeCreate,
    current_user: dict = Depends(get_current_user),
    pledges: PledgeService = Depends(get_pledge_service)
):
    """Pledge to an approved project (donor or admin)"""
    return ok(serialize_doc(await pledges.create_pledge(pledge_data.dict(), current_user)))


@api_router.get("/pledges")
async def list_pledges(
    project_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    pledges: PledgeService = Depends(get_pledge_service)
):
    result = await pledges.list_pledges(current_user, project_id, status_filter, page, limit)
    return ok({
        "pledges": [serialize_doc(p) for p in result["pledges"]],
        "pagination": result["pagination"]
    })


@api_router.get("/pledges/{pledge_id}")
async def get_pledge(
    pledge_id: str,
    current_user: dict = Depends(get_current_user),
    pledges: PledgeService = Depends(get_pledge_service)
):
    return ok(serialize_doc(await pledges.get_pledge(pledge_id)))


@api_router.patch("/pledges/{pledge_id}/confirm")
async def confirm_pledge(
    pledge_id: str,
    current_user: dict = Depends(get_current_user),
    pledges: PledgeService = Depends(get_pledge_service)
):
    """Confirm pledge (Admin only)"""
    return ok(serialize_doc(await pledges.confirm(pledge_id, current_user)))


@api_router.patch("/pledges/{pledge_id}/cancel")
async def cancel_pledge(
    pledge_id: str,
    current_user: dict = Depends(get_current_user),
    pledges: PledgeService = Depends(get_pledge_service)
):
    """Cancel pledge (pledging donor or admin)"""
    return ok(serialize_doc(await pledges.cancel(pledge_id, current_user)))


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return ok({
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "1.0.0"
    })


# Include router in main app
app.include_router(api_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_ensure_indexes():
    if settings.ensure_indexes_on_startup:
        await ensure_indexes(get_db())


@app.on_event("shutdown")
async def shutdown_db_client():
    close_client()
