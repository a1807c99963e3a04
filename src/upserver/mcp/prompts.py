"""MCP prompt templates for operator workflows."""

from upserver.mcp.server import mcp


@mcp.prompt()
def quote_review_prompt(review_id: str) -> str:
    """Generate a prompt to price a flagged request."""
    return (
        f"A customer request was flagged for human review: '{review_id}'.\n\n"
        f"Use get_review to read the request, its triage scope, triggers and reason.\n"
        f"Then:\n"
        f"1. Summarize what the customer is asking for in one or two sentences\n"
        f"2. Explain which triggers fired and whether they look justified\n"
        f"3. Estimate the effort and propose a price in cents\n"
        f"4. Draft a short, friendly note to the customer explaining the quote\n\n"
        f"Do not call quote_review until I confirm the price."
    )


@mcp.prompt()
def staging_health_report() -> str:
    """Generate a prompt for a preview server health report."""
    return (
        "Please check the health of all customer preview servers.\n\n"
        "Use list_staging to get every record, then staging_status for each one that "
        "claims to be running or starting (this reconciles it against the OS).\n"
        "Then report:\n"
        "1. Previews that are running and healthy\n"
        "2. Previews in error, with the last error output\n"
        "3. Records that were corrected by reconciliation\n"
        "4. Any customer that looks stuck and should be restarted"
    )
