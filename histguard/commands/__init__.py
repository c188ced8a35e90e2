"""Click commands for histguard."""
