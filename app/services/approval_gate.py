import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from app.core.exceptions import ApprovalAlreadyDecided, NotFound
from app.models.approval import ApprovalDecision, DecisionStatus
from app.repositories.approval_repository import ApprovalRepository

logger = logging.getLogger(__name__)

REASON_MANUAL = "manual"
REASON_TIMEOUT = "timeout"


class ApprovalGate:
    """
    Point de suspension du pipeline en attente d'une décision humaine.

    La décision est persistée; l'attente elle-même est un Future par run,
    résolu par decide() ou abandonné à l'échéance (traitée comme un rejet).
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._waiters: Dict[str, asyncio.Future] = {}

    async def request(self, run_id: str, deadline: Optional[datetime] = None) -> ApprovalDecision:
        """Bloque jusqu'à decide() ou jusqu'à `deadline`; reprend une demande déjà en attente"""
        with self.session_factory() as db:
            repo = ApprovalRepository(db)
            decision = repo.get_by_run_id(run_id)
            if decision is None:
                decision = repo.create({
                    "run_id": run_id,
                    "status": DecisionStatus.PENDING,
                    "requested_at": datetime.utcnow(),
                    "deadline": deadline
                })
                logger.info(f"Approbation demandée pour le run {run_id} (échéance {deadline or 'aucune'})")
            elif decision.is_terminal:
                return decision
            else:
                deadline = decision.deadline
                logger.info(f"Reprise de l'attente d'approbation du run {run_id}")

        future = asyncio.get_running_loop().create_future()
        self._waiters[run_id] = future
        try:
            remaining = None
            if deadline is not None:
                remaining = max(0.0, (deadline - datetime.utcnow()).total_seconds())
            await asyncio.wait_for(future, timeout=remaining)
        except asyncio.TimeoutError:
            self._expire(run_id)
        finally:
            self._waiters.pop(run_id, None)

        return self.get(run_id)

    def decide(
            self,
            run_id: str,
            approve: bool,
            decided_by: Optional[str] = None,
            comment: Optional[str] = None
    ) -> ApprovalDecision:
        """Décision externe (API approve/reject)"""
        with self.session_factory() as db:
            repo = ApprovalRepository(db)
            decision = repo.get_by_run_id(run_id)
            if decision is None:
                raise NotFound(f"No approval requested for run '{run_id}'")
            if decision.is_terminal:
                raise ApprovalAlreadyDecided(
                    f"Run '{run_id}' already {decision.status.value} ({decision.reason})"
                )
            decision = repo.update_fields(decision, {
                "status": DecisionStatus.APPROVED if approve else DecisionStatus.REJECTED,
                "decided_at": datetime.utcnow(),
                "decided_by": decided_by,
                "comment": comment,
                "reason": REASON_MANUAL
            })

        logger.info(f"Run {run_id} {decision.status.value} par {decided_by or 'inconnu'}")
        self._wake(run_id)
        return decision

    def get(self, run_id: str) -> ApprovalDecision:
        with self.session_factory() as db:
            decision = ApprovalRepository(db).get_by_run_id(run_id)
        if decision is None:
            raise NotFound(f"No approval requested for run '{run_id}'")
        return decision

    def pending(self) -> List[ApprovalDecision]:
        with self.session_factory() as db:
            return ApprovalRepository(db).get_pending()

    def is_waiting(self, run_id: str) -> bool:
        return run_id in self._waiters

    def _expire(self, run_id: str) -> None:
        with self.session_factory() as db:
            repo = ApprovalRepository(db)
            decision = repo.get_by_run_id(run_id)
            if decision is None or decision.is_terminal:
                return
            repo.update_fields(decision, {
                "status": DecisionStatus.REJECTED,
                "decided_at": datetime.utcnow(),
                "decided_by": None,
                "reason": REASON_TIMEOUT
            })
        logger.warning(f"Approbation du run {run_id} expirée, traitée comme un rejet")

    def _wake(self, run_id: str) -> None:
        future = self._waiters.get(run_id)
        if future is None or future.done():
            return
        loop = future.get_loop()

        def _resolve():
            if not future.done():
                future.set_result(True)

        loop.call_soon_threadsafe(_resolve)
