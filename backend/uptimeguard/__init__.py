"""UptimeGuard - uptime monitoring core."""
