"""Alert24 - status pages, monitoring checks and incident escalation."""
