"""Access credentials, the ledger collaborator and the request/approve/decrypt protocol."""
