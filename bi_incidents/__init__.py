"""BI failure incident tracking, remediation workflow and notifications."""

__version__ = "1.0.0"
