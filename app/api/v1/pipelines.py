from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from typing import List, Optional

from app.api.auth import get_current_active_user, require_approver
from app.api.schemas.pipeline import (
    TriggerRequest,
    TriggerResponse,
    PipelineRunResponse,
    RoutingStateResponse,
    DecisionRequest,
    DecisionResponse,
    CancelResponse,
)
from app.dependencies import get_sequencer, get_approval_gate, get_pipeline_run_repository
from app.models.user import User
from app.repositories.pipeline_run_repository import PipelineRunRepository

router = APIRouter(tags=["pipelines"])

SERVICE_NAME = Path(..., pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", max_length=63)


@router.post(
    "/services/{service_name}/runs",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def trigger_run(
        request: TriggerRequest,
        service_name: str = SERVICE_NAME,
        current_user: User = Depends(get_current_active_user)
):
    """Déclencher un pipeline pour une nouvelle révision (webhook source)"""
    run_id = await get_sequencer(service_name).on_new_revision(request.source_revision)
    return TriggerResponse(
        run_id=run_id,
        service_name=service_name,
        message=f"Pipeline démarré par {current_user.username}"
    )


@router.get("/services/{service_name}/runs", response_model=List[PipelineRunResponse])
async def list_runs(
        service_name: str = SERVICE_NAME,
        limit: int = Query(50, ge=1, le=500),
        current_user: User = Depends(get_current_active_user)
):
    """Historique des runs d'un service, du plus récent au plus ancien"""
    runs = get_sequencer(service_name).list_runs(limit)
    return [PipelineRunResponse.model_validate(run) for run in runs]


@router.get("/services/{service_name}/routing", response_model=RoutingStateResponse)
async def get_routing_state(
        service_name: str = SERVICE_NAME,
        current_user: User = Depends(get_current_active_user)
):
    state = get_sequencer(service_name).switcher.load_state()
    return RoutingStateResponse.model_validate(state)


@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(
        run_id: str,
        repo: PipelineRunRepository = Depends(get_pipeline_run_repository),
        current_user: User = Depends(get_current_active_user)
):
    run = repo.get_by_run_id(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run non trouvé")
    return PipelineRunResponse.model_validate(run)


@router.get("/approvals/pending", response_model=List[DecisionResponse])
async def list_pending_approvals(current_user: User = Depends(get_current_active_user)):
    """Runs bloqués à la porte d'approbation"""
    return [DecisionResponse.model_validate(decision) for decision in get_approval_gate().pending()]


@router.post("/runs/{run_id}/approve", response_model=DecisionResponse)
async def approve_run(
        run_id: str,
        request: Optional[DecisionRequest] = None,
        current_user: User = Depends(require_approver)
):
    """Approuver le cutover d'un run en attente"""
    decision = get_approval_gate().decide(run_id, True, current_user.username, request.comment if request else None)
    return DecisionResponse.model_validate(decision)


@router.post("/runs/{run_id}/reject", response_model=DecisionResponse)
async def reject_run(
        run_id: str,
        request: Optional[DecisionRequest] = None,
        current_user: User = Depends(require_approver)
):
    """Rejeter un run en attente: le candidat est retiré"""
    decision = get_approval_gate().decide(run_id, False, current_user.username, request.comment if request else None)
    return DecisionResponse.model_validate(decision)


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_run(
        run_id: str,
        repo: PipelineRunRepository = Depends(get_pipeline_run_repository),
        current_user: User = Depends(get_current_active_user)
):
    """Annuler un run avant son cutover"""
    run = repo.get_by_run_id(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run non trouvé")
    get_sequencer(run.service_name).cancel(run_id, current_user.username)
    return CancelResponse(run_id=run_id, message="Annulation demandée")
