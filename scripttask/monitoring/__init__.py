"""
Monitoring & Observability package

Includes:
- metrics: Prometheus counters and histograms for scheduling and remediation
- alerting: operator notifications
"""
