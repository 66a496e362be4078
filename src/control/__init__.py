"""Control plane: privileged calls, rate limits, audit trail, alerts and settings."""
