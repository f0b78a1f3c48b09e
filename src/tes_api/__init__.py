"""Task Execution Service API."""
