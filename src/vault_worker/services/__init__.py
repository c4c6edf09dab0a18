"""Services: account upserts and the exposed vault worker operations."""

# accounts first: the pipeline package imports it while services is loading
from vault_worker.services.accounts import AccountService, EnsureAccountResult
from vault_worker.services.vault_service import VaultWorkerService

__all__ = ["AccountService", "EnsureAccountResult", "VaultWorkerService"]
