"""POI visit validation, anti-cheat reward issuance and session anomaly tracking."""
