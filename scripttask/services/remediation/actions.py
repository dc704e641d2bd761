"""
Side-effecting actions used by remediation steps and escalation tiers.

Webhooks go out through httpx; email delivery is delegated to an injected
EmailSender. Every action reports an ActionResult instead of raising, so
callers decide whether a failure is retried, escalated or ignored.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import httpx

from scripttask.core.config import settings
from scripttask.models.remediation import (
    ExecutionStatus,
    NodeQuarantine,
    RemediationExecution,
    StepStatus,
)
from scripttask.models.scheduling import Job, SchedulePriority
from scripttask.monitoring.alerting.notification import NotificationManager
from scripttask.services.scheduling.projector import JobQueueProjector
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import isoformat, utcnow

from .repository import RemediationRepository

logger = get_logger(__name__)

SUCCESS_COLORS = {"slack": "good", "teams": "00ff00", "discord": 0x00FF00}
FAILURE_COLORS = {"slack": "danger", "teams": "ff0000", "discord": 0xFF0000}


@dataclass
class ActionResult:
    """Outcome of a single action"""

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


class EmailSender(ABC):
    """Email transport collaborator"""

    @abstractmethod
    async def send(self, to: List[str], subject: str, body: str) -> ActionResult:
        pass


class UnconfiguredEmailSender(EmailSender):
    """Default sender; reports failure so escalation moves to the next tier"""

    async def send(self, to: List[str], subject: str, body: str) -> ActionResult:
        logger.warning("Email requested but no transport is configured", recipients=to)
        return ActionResult(success=False, error="Email transport not configured")


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _status_of(execution: RemediationExecution) -> str:
    return ExecutionStatus(execution.status).value


class ActionHandler:
    """Webhook, email, quarantine, rollback and admin notification actions"""

    def __init__(
        self,
        repository: RemediationRepository,
        projector: JobQueueProjector,
        email_sender: Optional[EmailSender] = None,
        notifier: Optional[NotificationManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        webhook_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.projector = projector
        self.email_sender = email_sender or UnconfiguredEmailSender()
        self.notifier = notifier or NotificationManager()
        self._http_client = http_client
        self.webhook_timeout = (
            webhook_timeout if webhook_timeout is not None else settings.WEBHOOK_TIMEOUT_SECONDS
        )
        self.quarantined_nodes: Set[str] = set()

    # Webhooks

    async def send_webhook(
        self,
        config: Dict[str, Any],
        execution: RemediationExecution,
        workflow_name: str,
    ) -> ActionResult:
        url = config.get("url")
        if not url:
            return ActionResult(success=False, error="Webhook URL not configured")

        method = (config.get("method") or "POST").upper()
        headers = config.get("headers") or {"Content-Type": "application/json"}
        payload = self.build_webhook_payload(config, execution, workflow_name)

        logger.info(
            "Sending webhook",
            execution_id=execution.id,
            url=url,
            method=method,
            webhook_type=config.get("webhook_type", "generic"),
        )
        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                    response = await client.request(method, url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Webhook request failed: {e}", execution_id=execution.id, url=url)
            return ActionResult(success=False, error=str(e))

        if 200 <= response.status_code < 300:
            return ActionResult(
                success=True,
                message=f"Webhook delivered ({response.status_code})",
                status_code=response.status_code,
            )

        logger.warning(
            "Webhook returned non-success status",
            execution_id=execution.id,
            status_code=response.status_code,
        )
        return ActionResult(
            success=False,
            error=f"Webhook returned status {response.status_code}",
            status_code=response.status_code,
        )

    def build_webhook_payload(
        self,
        config: Dict[str, Any],
        execution: RemediationExecution,
        workflow_name: str,
    ) -> Dict[str, Any]:
        webhook_type = config.get("webhook_type") or "generic"
        status = _status_of(execution)
        started = isoformat(execution.started_at)
        completed = isoformat(execution.finished_at) or "In Progress"
        succeeded = status == ExecutionStatus.SUCCESS.value
        title = f"Remediation Workflow: {workflow_name}"

        if webhook_type == "slack":
            return {
                "text": title,
                "attachments": [
                    {
                        "color": SUCCESS_COLORS["slack"] if succeeded else FAILURE_COLORS["slack"],
                        "fields": [
                            {"title": "Status", "value": status, "short": True},
                            {"title": "Node ID", "value": execution.node_id, "short": True},
                            {"title": "Workflow", "value": workflow_name, "short": False},
                            {"title": "Started", "value": started, "short": True},
                            {"title": "Completed", "value": completed, "short": True},
                        ],
                    }
                ],
            }

        if webhook_type == "teams":
            return {
                "@type": "MessageCard",
                "@context": "https://schema.org/extensions",
                "summary": f"Remediation: {workflow_name}",
                "themeColor": SUCCESS_COLORS["teams"] if succeeded else FAILURE_COLORS["teams"],
                "title": title,
                "sections": [
                    {
                        "facts": [
                            {"name": "Status", "value": status},
                            {"name": "Node ID", "value": execution.node_id},
                            {"name": "Started", "value": started},
                            {"name": "Completed", "value": completed},
                        ]
                    }
                ],
            }

        if webhook_type == "discord":
            return {
                "embeds": [
                    {
                        "title": title,
                        "color": SUCCESS_COLORS["discord"] if succeeded else FAILURE_COLORS["discord"],
                        "fields": [
                            {"name": "Status", "value": status, "inline": True},
                            {"name": "Node ID", "value": execution.node_id, "inline": True},
                            {"name": "Started", "value": started, "inline": True},
                            {"name": "Completed", "value": completed, "inline": True},
                        ],
                        "timestamp": isoformat(utcnow()),
                    }
                ]
            }

        return {
            "workflow_name": workflow_name,
            "workflow_id": execution.workflow_id,
            "execution_id": execution.id,
            "node_id": execution.node_id,
            "status": status,
            "timestamp": isoformat(utcnow()),
            "step_results": list(execution.step_results or []),
        }

    # Email

    async def send_email(
        self,
        config: Dict[str, Any],
        execution: RemediationExecution,
        workflow_name: str,
    ) -> ActionResult:
        recipients = config.get("to") or []
        if isinstance(recipients, str):
            recipients = [recipients]
        if not recipients:
            return ActionResult(success=False, error="Email recipient not configured")

        values = _TemplateValues(
            workflow_name=workflow_name,
            node_id=execution.node_id,
            execution_id=execution.id,
            status=_status_of(execution),
        )
        subject = str(config.get("subject") or "").format_map(values)
        body = str(config.get("body") or config.get("template") or "").format_map(values)

        try:
            return await self.email_sender.send(recipients, subject, body)
        except Exception as e:
            logger.error(f"Email sender failed: {e}", execution_id=execution.id, exc_info=True)
            return ActionResult(success=False, error=str(e))

    # Quarantine

    def quarantine_node(self, node_id: str, reason: str = "Remediation failure") -> ActionResult:
        """Exclude a node from dispatch and cancel its pending jobs"""
        record = self.repository.create_quarantine(node_id, reason)
        self.quarantined_nodes.add(node_id)
        cancelled = self.projector.cancel_pending_for_node(node_id, "Node quarantined")
        logger.warning(
            "Node quarantined", node_id=node_id, reason=reason, cancelled_jobs=cancelled
        )
        return ActionResult(
            success=True,
            message="Node quarantined",
            details={"quarantine_id": record.id, "cancelled_jobs": cancelled},
        )

    def unquarantine_node(self, node_id: str) -> ActionResult:
        cleared = self.repository.deactivate_quarantine(node_id)
        self.quarantined_nodes.discard(node_id)
        logger.info("Node unquarantined", node_id=node_id, records=cleared)
        return ActionResult(
            success=True, message="Node unquarantined", details={"records": cleared}
        )

    def is_node_quarantined(self, node_id: str) -> bool:
        return node_id in self.quarantined_nodes

    def load_quarantined_nodes(self) -> List[NodeQuarantine]:
        records = self.repository.list_active_quarantines()
        self.quarantined_nodes = {record.node_id for record in records}
        logger.info("Loaded quarantined nodes", count=len(self.quarantined_nodes))
        return records

    # Rollback

    def perform_rollback(
        self, execution: RemediationExecution, steps: Dict[str, Dict[str, Any]]
    ) -> List[Job]:
        """
        Queue corrective jobs for successful steps that declare a rollback
        script, most recently completed first.

        `steps` maps step id to that step's configuration.
        """
        jobs = []
        for result in reversed(list(execution.step_results or [])):
            if result.get("status") != StepStatus.SUCCESS.value:
                continue
            step_id = result.get("step_id")
            rollback_script_id = (steps.get(step_id) or {}).get("rollback_script_id")
            if not rollback_script_id:
                continue

            jobs.append(
                self.projector.queue_job(
                    script_id=rollback_script_id,
                    node_id=execution.node_id,
                    priority=SchedulePriority.HIGH,
                    tags=["rollback", "remediation"],
                    metadata={
                        "reason": "Rollback from failed remediation",
                        "original_step_id": step_id,
                    },
                    execution_id=execution.id,
                    step_id=step_id,
                    source="rollback",
                )
            )

        logger.info(
            "Rollback jobs queued", execution_id=execution.id, rollback_steps=len(jobs)
        )
        return jobs

    # Admin notification

    def notify_admins(self, alert: Dict[str, Any]) -> bool:
        return self.notifier.notify(
            alert.get("title", "Remediation alert"),
            severity=alert.get("severity", "critical"),
            context={k: v for k, v in alert.items() if k not in ("title", "severity")},
        )
