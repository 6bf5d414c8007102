"""CRM gateway core: OAuth2 credential lifecycle, CRM client, reconciliation."""
