"""
Remediation system database repository.

Data access for workflows, executions, escalation policies, node quarantine
records and admin alerts. Follows the same unit-of-work rules as the
scheduling repository: own session per call unless one is injected.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import asc, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scripttask.core.exceptions import (
    ExecutionNotFoundError,
    ScriptTaskError,
    WorkflowNotFoundError,
)
from scripttask.models.remediation import (
    AdminAlert,
    EscalationPolicy,
    ExecutionStatus,
    NodeQuarantine,
    RemediationExecution,
    RemediationWorkflow,
)
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import utcnow

logger = get_logger(__name__)

EXECUTION_SORT_FIELDS = {
    "started_at": RemediationExecution.started_at,
    "finished_at": RemediationExecution.finished_at,
    "status": RemediationExecution.status,
    "workflow_name": RemediationExecution.workflow_name,
    "node_id": RemediationExecution.node_id,
    "duration_seconds": RemediationExecution.duration_seconds,
}


class RemediationRepositoryError(ScriptTaskError):
    """Base exception for remediation repository operations"""

    pass


class RemediationRepository:
    """Repository for remediation data operations"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        db: Optional[Session] = None,
    ):
        if session_factory is None and db is None:
            from scripttask.core.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._db = db
        self._auto_commit = db is None

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Context manager for database transactions"""
        db = self._db if self._db is not None else self._session_factory()
        try:
            yield db
            if self._auto_commit:
                db.commit()
            else:
                db.flush()
        except SQLAlchemyError as e:
            if self._auto_commit:
                db.rollback()
            logger.error(f"Transaction failed: {e}", exc_info=True)
            raise RemediationRepositoryError(f"Database operation failed: {e}") from e
        except Exception:
            if self._auto_commit:
                db.rollback()
            raise
        finally:
            if self._auto_commit:
                db.close()

    # Workflow Methods

    def create_workflow(self, workflow_data: Dict[str, Any]) -> RemediationWorkflow:
        with self.transaction() as db:
            workflow = RemediationWorkflow(**workflow_data)
            db.add(workflow)
            db.flush()
            logger.info(
                "Created remediation workflow",
                workflow_id=workflow.id,
                name=workflow.name,
                steps=len(workflow.steps or []),
            )
            return workflow

    def get_workflow(self, workflow_id: str) -> Optional[RemediationWorkflow]:
        with self.transaction() as db:
            return db.get(RemediationWorkflow, workflow_id)

    def require_workflow(self, workflow_id: str) -> RemediationWorkflow:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def list_workflows(self, enabled: Optional[bool] = None) -> List[RemediationWorkflow]:
        with self.transaction() as db:
            query = db.query(RemediationWorkflow)
            if enabled is not None:
                query = query.filter(RemediationWorkflow.enabled == enabled)
            return query.order_by(RemediationWorkflow.name).all()

    def update_workflow(
        self, workflow_id: str, updates: Dict[str, Any]
    ) -> RemediationWorkflow:
        with self.transaction() as db:
            workflow = db.get(RemediationWorkflow, workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
            for key, value in updates.items():
                if hasattr(workflow, key):
                    setattr(workflow, key, value)
            workflow.updated_at = utcnow()
            db.flush()
            logger.info(
                "Updated remediation workflow",
                workflow_id=workflow_id,
                updated_fields=list(updates.keys()),
            )
            return workflow

    def delete_workflow(self, workflow_id: str) -> bool:
        with self.transaction() as db:
            workflow = db.get(RemediationWorkflow, workflow_id)
            if workflow is None:
                return False
            db.delete(workflow)
            logger.info("Deleted remediation workflow", workflow_id=workflow_id)
            return True

    # Execution Methods

    def create_execution(self, execution_data: Dict[str, Any]) -> RemediationExecution:
        with self.transaction() as db:
            execution = RemediationExecution(**execution_data)
            db.add(execution)
            db.flush()
            return execution

    def get_execution(self, execution_id: str) -> Optional[RemediationExecution]:
        with self.transaction() as db:
            return db.get(RemediationExecution, execution_id)

    def require_execution(self, execution_id: str) -> RemediationExecution:
        execution = self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution

    def find_running_execution(
        self, workflow_id: str, node_id: str
    ) -> Optional[RemediationExecution]:
        with self.transaction() as db:
            return (
                db.query(RemediationExecution)
                .filter(
                    RemediationExecution.workflow_id == workflow_id,
                    RemediationExecution.node_id == node_id,
                    RemediationExecution.status == ExecutionStatus.RUNNING,
                )
                .order_by(RemediationExecution.started_at)
                .first()
            )

    def list_running_executions(self) -> List[RemediationExecution]:
        with self.transaction() as db:
            return (
                db.query(RemediationExecution)
                .filter(RemediationExecution.status == ExecutionStatus.RUNNING)
                .all()
            )

    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        node_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        since: Optional[datetime] = None,
        sort_by: str = "started_at",
        sort_order: str = "desc",
        limit: int = 50,
        skip: int = 0,
    ) -> List[RemediationExecution]:
        if sort_by not in EXECUTION_SORT_FIELDS:
            raise ValueError(f"Cannot sort executions by {sort_by}")

        with self.transaction() as db:
            query = db.query(RemediationExecution)
            if workflow_id is not None:
                query = query.filter(RemediationExecution.workflow_id == workflow_id)
            if node_id is not None:
                query = query.filter(RemediationExecution.node_id == node_id)
            if status is not None:
                query = query.filter(RemediationExecution.status == ExecutionStatus(status))
            if triggered_by is not None:
                query = query.filter(RemediationExecution.triggered_by == triggered_by)
            if since is not None:
                query = query.filter(RemediationExecution.started_at >= since)

            column = EXECUTION_SORT_FIELDS[sort_by]
            order = asc(column) if sort_order == "asc" else desc(column)
            return query.order_by(order).offset(skip).limit(limit).all()

    def update_execution(
        self, execution_id: str, updates: Dict[str, Any]
    ) -> RemediationExecution:
        with self.transaction() as db:
            execution = db.get(RemediationExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            for key, value in updates.items():
                setattr(execution, key, value)
            db.flush()
            return execution

    def append_step_result(
        self,
        execution_id: str,
        result: Dict[str, Any],
        current_step: Optional[str] = None,
    ) -> RemediationExecution:
        """Append a step result; JSON lists are replaced, not mutated"""
        with self.transaction() as db:
            execution = db.get(RemediationExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            execution.step_results = list(execution.step_results or []) + [result]
            execution.current_step = current_step
            db.flush()
            return execution

    def append_alert(self, execution_id: str, alert: Dict[str, Any]) -> None:
        with self.transaction() as db:
            execution = db.get(RemediationExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            execution.alerts = list(execution.alerts or []) + [alert]

    def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        reason: Optional[str],
        finished_at: datetime,
        duration_seconds: float,
    ) -> bool:
        """
        Write a terminal status only if the execution is still running.

        Returns False when another writer already finished it.
        """
        with self.transaction() as db:
            updated = (
                db.query(RemediationExecution)
                .filter(
                    RemediationExecution.id == execution_id,
                    RemediationExecution.status == ExecutionStatus.RUNNING,
                )
                .update(
                    {
                        RemediationExecution.status: status,
                        RemediationExecution.completion_reason: reason,
                        RemediationExecution.finished_at: finished_at,
                        RemediationExecution.duration_seconds: duration_seconds,
                    },
                    synchronize_session=False,
                )
            )
            return updated > 0

    # Escalation Policy Methods

    def create_escalation_policy(self, policy_data: Dict[str, Any]) -> EscalationPolicy:
        with self.transaction() as db:
            policy = EscalationPolicy(**policy_data)
            db.add(policy)
            db.flush()
            logger.info(
                "Created escalation policy",
                policy_id=policy.id,
                name=policy.name,
                tiers=len(policy.tiers or []),
            )
            return policy

    def get_escalation_policy(self, policy_id: str) -> Optional[EscalationPolicy]:
        with self.transaction() as db:
            return db.get(EscalationPolicy, policy_id)

    def list_escalation_policies(self) -> List[EscalationPolicy]:
        with self.transaction() as db:
            return db.query(EscalationPolicy).order_by(EscalationPolicy.name).all()

    # Quarantine Methods

    def create_quarantine(self, node_id: str, reason: str) -> NodeQuarantine:
        """Open an active quarantine record; an existing active record is reused"""
        with self.transaction() as db:
            existing = (
                db.query(NodeQuarantine)
                .filter(NodeQuarantine.node_id == node_id, NodeQuarantine.active.is_(True))
                .first()
            )
            if existing is not None:
                return existing
            record = NodeQuarantine(node_id=node_id, reason=reason, active=True)
            db.add(record)
            db.flush()
            return record

    def deactivate_quarantine(self, node_id: str) -> int:
        with self.transaction() as db:
            records = (
                db.query(NodeQuarantine)
                .filter(NodeQuarantine.node_id == node_id, NodeQuarantine.active.is_(True))
                .all()
            )
            now = utcnow()
            for record in records:
                record.active = False
                record.unquarantined_at = now
            return len(records)

    def list_active_quarantines(self) -> List[NodeQuarantine]:
        with self.transaction() as db:
            return (
                db.query(NodeQuarantine)
                .filter(NodeQuarantine.active.is_(True))
                .order_by(NodeQuarantine.quarantined_at)
                .all()
            )

    # Admin Alert Methods

    def create_admin_alert(self, alert_data: Dict[str, Any]) -> AdminAlert:
        with self.transaction() as db:
            alert = AdminAlert(**alert_data)
            db.add(alert)
            db.flush()
            return alert

    def list_admin_alerts(
        self,
        execution_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[AdminAlert]:
        with self.transaction() as db:
            query = db.query(AdminAlert)
            if execution_id is not None:
                query = query.filter(AdminAlert.execution_id == execution_id)
            if acknowledged is not None:
                query = query.filter(AdminAlert.acknowledged == acknowledged)
            return query.order_by(AdminAlert.created_at).all()

    def acknowledge_alert(self, alert_id: str) -> bool:
        with self.transaction() as db:
            alert = db.get(AdminAlert, alert_id)
            if alert is None:
                return False
            alert.acknowledged = True
            return True
