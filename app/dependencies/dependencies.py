from fastapi import Request
from app.storage.vault import VaultStorage

def get_vault_storage(request: Request) -> VaultStorage:
    """Dependency provider for VaultStorage"""
    return request.app.state.vault
