"""Fleet script scheduling and remediation workflows."""

__version__ = "0.1.0"
