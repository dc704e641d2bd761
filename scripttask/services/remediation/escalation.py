"""
Retry decisions and tiered escalation for failed remediation steps.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from scripttask.core.config import settings
from scripttask.core.exceptions import ValidationError
from scripttask.models.remediation import (
    AlertSeverity,
    EscalationPolicy,
    RemediationExecution,
    TierType,
)
from scripttask.models.scheduling import SchedulePriority
from scripttask.monitoring.metrics import ESCALATIONS_TOTAL
from scripttask.services.scheduling.projector import JobQueueProjector
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import isoformat, utcnow

from .actions import ActionHandler, ActionResult
from .repository import RemediationRepository
from .workflow import CompiledStep

logger = get_logger(__name__)


@dataclass
class RetryDecision:
    should_retry: bool
    delay_seconds: float = 0.0
    attempt: int = 0
    max_attempts: int = 0


@dataclass
class EscalationResult:
    success: bool
    tier: Optional[int] = None
    reason: Optional[str] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)


def backoff_delay(
    backoff_type: str,
    base_delay: float,
    attempt: int,
    cap: Optional[float] = None,
) -> float:
    """
    Delay before retry number `attempt` (zero based).

    exponential: base * 2^attempt; linear: base * (attempt + 1).
    """
    cap = settings.RETRY_MAX_DELAY_SECONDS if cap is None else cap
    if backoff_type == "linear":
        delay = base_delay * (attempt + 1)
    elif backoff_type == "exponential":
        delay = base_delay * (2 ** attempt)
    else:
        delay = base_delay
    return min(delay, cap)


class EscalationManager:
    """Decides step retries and runs escalation policies"""

    def __init__(
        self,
        repository: RemediationRepository,
        actions: ActionHandler,
        projector: JobQueueProjector,
    ):
        self.repository = repository
        self.actions = actions
        self.projector = projector

    # Retry decisions

    def decide_retry(
        self,
        execution: RemediationExecution,
        step: CompiledStep,
        error: Optional[BaseException] = None,
        in_flight_retries: int = 0,
    ) -> RetryDecision:
        """
        Consult the step's retry policy.

        Retries already consumed are those recorded on the execution's
        results for this step plus the ones taken during the current attempt.
        """
        policy = step.config.get("retry_policy") or {}
        max_attempts = policy.get("max_attempts")
        if max_attempts is None:
            max_attempts = settings.RETRY_DEFAULT_MAX_ATTEMPTS
        backoff_type = policy.get("backoff_type") or "exponential"
        base_delay = policy.get("delay_seconds")
        if base_delay is None:
            base_delay = settings.RETRY_DEFAULT_DELAY_SECONDS

        recorded = sum(r.get("retry_count") or 0 for r in execution.results_for_step(step.id))
        consumed = recorded + in_flight_retries

        if consumed >= max_attempts:
            logger.info(
                "Max retry attempts reached",
                execution_id=execution.id,
                step_id=step.id,
                max_attempts=max_attempts,
            )
            return RetryDecision(False, attempt=consumed, max_attempts=max_attempts)

        delay = backoff_delay(backoff_type, base_delay, consumed)
        logger.info(
            "Scheduling step retry",
            execution_id=execution.id,
            step_id=step.id,
            attempt=consumed + 1,
            max_attempts=max_attempts,
            delay_seconds=delay,
            error=str(error) if error else None,
        )
        return RetryDecision(True, delay, attempt=consumed + 1, max_attempts=max_attempts)

    # Escalation

    async def escalate(
        self,
        execution: RemediationExecution,
        workflow_name: str,
        policy_id: Optional[str],
    ) -> EscalationResult:
        """
        Try each tier of the workflow's escalation policy in order.

        Never raises; exhaustion always produces an admin alert.
        """
        log = logger.bind(execution_id=execution.id, node_id=execution.node_id)
        try:
            policy = self.repository.get_escalation_policy(policy_id) if policy_id else None
            if policy is None:
                log.warning("No escalation policy defined")
                self.send_admin_alert(execution, workflow_name, "No escalation policy")
                ESCALATIONS_TOTAL.labels(outcome="exhausted").inc()
                return EscalationResult(False, reason="No escalation policy")

            attempts = []
            for index, tier in enumerate(policy.tiers or [], start=1):
                tier_type = tier.get("type")
                log.info("Executing escalation tier", tier=index, tier_type=tier_type)
                result = await self.execute_tier(tier, execution, workflow_name)
                attempts.append(
                    {"tier": index, "type": tier_type, "success": result.success, "error": result.error}
                )

                if result.success:
                    self.repository.append_alert(
                        execution.id,
                        {
                            "type": "escalation",
                            "message": f"Escalated to tier {index}: {tier_type}",
                            "tier": index,
                            "timestamp": isoformat(utcnow()),
                        },
                    )
                    ESCALATIONS_TOTAL.labels(outcome="tier_succeeded").inc()
                    return EscalationResult(True, tier=index, attempts=attempts)

                log.info("Escalation tier failed, trying next tier", tier=index, error=result.error)

            self.send_admin_alert(execution, workflow_name, "All escalation tiers failed")
            ESCALATIONS_TOTAL.labels(outcome="exhausted").inc()
            return EscalationResult(False, reason="All tiers failed", attempts=attempts)

        except Exception as e:
            log.error(f"Error during escalation: {e}", exc_info=True)
            self.send_admin_alert(execution, workflow_name, f"Escalation error: {e}")
            ESCALATIONS_TOTAL.labels(outcome="exhausted").inc()
            return EscalationResult(False, reason=str(e))

    async def execute_tier(
        self,
        tier: Dict[str, Any],
        execution: RemediationExecution,
        workflow_name: str,
    ) -> ActionResult:
        config = {**tier, **(tier.get("config") or {})}
        try:
            tier_type = TierType(tier.get("type"))
        except ValueError:
            return ActionResult(success=False, error=f"Unknown tier type: {tier.get('type')}")

        try:
            if tier_type == TierType.RUN_SCRIPT:
                return self._run_alternate_script(config, execution)
            if tier_type == TierType.WEBHOOK:
                return await self.actions.send_webhook(config, execution, workflow_name)
            if tier_type == TierType.EMAIL:
                return await self.actions.send_email(config, execution, workflow_name)
            if tier_type == TierType.QUARANTINE:
                return self.actions.quarantine_node(
                    execution.node_id, reason=config.get("reason") or "Remediation escalation"
                )
            return ActionResult(success=False, error="Custom actions not implemented")
        except Exception as e:
            logger.error(
                f"Escalation tier raised: {e}",
                execution_id=execution.id,
                tier_type=tier_type.value,
                exc_info=True,
            )
            return ActionResult(success=False, error=str(e))

    def _run_alternate_script(
        self, config: Dict[str, Any], execution: RemediationExecution
    ) -> ActionResult:
        script_id = config.get("script_id")
        if not script_id:
            return ActionResult(success=False, error="No script ID specified")

        job = self.projector.queue_job(
            script_id=script_id,
            node_id=execution.node_id,
            priority=SchedulePriority.HIGH,
            tags=["escalation", "remediation"],
            metadata={
                "reason": "Escalation from failed remediation",
                "original_workflow_id": execution.workflow_id,
            },
            execution_id=execution.id,
            source="escalation",
        )
        return ActionResult(
            success=True,
            message="Alternative script queued for execution",
            details={"job_id": job.id},
        )

    def send_admin_alert(
        self, execution: RemediationExecution, workflow_name: str, reason: str
    ) -> Optional[Dict[str, Any]]:
        """Persist an admin alert, attach it to the execution and notify"""
        alert_data = {
            "severity": AlertSeverity.CRITICAL,
            "title": f"Remediation Workflow Failed: {workflow_name}",
            "message": (
                f"Workflow '{workflow_name}' failed for node {execution.node_id}. "
                f"Reason: {reason}"
            ),
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "node_id": execution.node_id,
        }

        alert = None
        try:
            alert = self.repository.create_admin_alert(alert_data).to_dict()
            self.repository.append_alert(
                execution.id,
                {
                    "type": "admin_alert",
                    "message": alert_data["message"],
                    "alert_id": alert["id"],
                    "timestamp": alert["created_at"],
                },
            )
        except Exception as e:
            logger.error(f"Failed to persist admin alert: {e}", execution_id=execution.id, exc_info=True)

        try:
            self.actions.notify_admins(alert or {**alert_data, "severity": "critical"})
        except Exception as e:
            logger.error(f"Failed to notify admins: {e}", execution_id=execution.id, exc_info=True)

        logger.warning("Admin alert raised", execution_id=execution.id, reason=reason)
        return alert

    # Policy administration

    def create_escalation_policy(
        self,
        name: str,
        tiers: List[Dict[str, Any]],
        description: str = "",
        created_by: str = "system",
    ) -> EscalationPolicy:
        if not name:
            raise ValidationError("Escalation policy name is required")
        if not isinstance(tiers, list):
            raise ValidationError("Escalation tiers must be a list")

        for index, tier in enumerate(tiers, start=1):
            if not isinstance(tier, dict):
                raise ValidationError(f"Tier {index}: must be an object")
            try:
                tier_type = TierType(tier.get("type"))
            except ValueError:
                raise ValidationError(f"Tier {index}: unknown type {tier.get('type')!r}")
            config = {**tier, **(tier.get("config") or {})}
            if tier_type == TierType.RUN_SCRIPT and not config.get("script_id"):
                raise ValidationError(f"Tier {index}: runScript tier needs a script_id")
            if tier_type == TierType.WEBHOOK and not config.get("url"):
                raise ValidationError(f"Tier {index}: webhook tier needs a url")

        return self.repository.create_escalation_policy(
            {
                "name": name,
                "description": description,
                "tiers": [dict(tier) for tier in tiers],
                "created_by": created_by,
            }
        )
