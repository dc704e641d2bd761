from prometheus_client import Counter, Histogram

# --- Scheduler Metrics ---

# Counter for schedule firings by how the evaluation ended.
# Labels:
# - outcome: "fired", "blocked_window", "deferred", "blocked_dependency",
#   "no_targets" or "error".
SCHEDULE_FIRINGS_TOTAL = Counter(
    "scripttask_schedule_firings_total",
    "Total number of schedule firings by outcome.",
    ["outcome"],
)

# Counter for job records created.
# Labels:
# - source: "schedule", "remediation", "rollback", "escalation" or "retry".
JOBS_CREATED_TOTAL = Counter(
    "scripttask_jobs_created_total",
    "Total number of job records created.",
    ["source"],
)

# Counter for node admissions refused by the concurrency gate.
CONCURRENCY_REJECTIONS_TOTAL = Counter(
    "scripttask_concurrency_rejections_total",
    "Total number of node admissions refused by concurrency limits.",
)

# --- Remediation Metrics ---

# Counter for executions reaching a terminal status.
# Labels:
# - status: "success", "failed", "cancelled" or "rolled_back".
EXECUTIONS_COMPLETED_TOTAL = Counter(
    "scripttask_executions_completed_total",
    "Total number of remediation executions by terminal status.",
    ["status"],
)

# Histogram for step latency. Buckets span quick webhook calls through
# long-running scripts bounded by the default step timeout.
# Labels:
# - step_type: "script", "webhook", "email", "delay" or "condition".
STEP_DURATION_SECONDS = Histogram(
    "scripttask_step_duration_seconds",
    "Duration of remediation workflow steps.",
    ["step_type"],
    buckets=[0.1, 0.5, 1, 5, 15, 60, 120, 300, 600],
)

# Counter for escalations by outcome.
# Labels:
# - outcome: "tier_succeeded" or "exhausted".
ESCALATIONS_TOTAL = Counter(
    "scripttask_escalations_total",
    "Total number of escalations by outcome.",
    ["outcome"],
)
