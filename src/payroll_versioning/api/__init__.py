"""HTTP API for payroll versioning."""
