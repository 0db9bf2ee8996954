"""GxP compliance integrity service: e-signatures, audit trail, attempt throttling."""
