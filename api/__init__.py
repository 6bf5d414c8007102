"""HTTP surface of the CRM gateway (FastAPI app + launcher)."""
