"""domain_audit.crawler: transport, redirect resolution, telemetry, crawl state and orchestration."""
