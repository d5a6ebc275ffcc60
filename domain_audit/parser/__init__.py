"""domain_audit.parser: HTML document parsing."""
