"""RelayKit: error retry, webhook delivery and audit logging service."""
