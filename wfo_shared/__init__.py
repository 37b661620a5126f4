"""Shared layer for the WorkforceOne offline client: models, local store, logging."""
