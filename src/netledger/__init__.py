"""netledger: per-process network usage attribution and history."""
