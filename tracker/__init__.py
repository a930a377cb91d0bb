"""tracker/ -- Issue tracker (JIRA) client and release/issue syncer."""
