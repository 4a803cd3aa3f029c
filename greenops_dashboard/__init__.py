"""GreenOps Dashboard: FinOps and GreenOps API for connected Google Cloud accounts."""
