# tekitoi/registry/__init__.py
from .client_registry import ClientRegistry
from .models import Application, Dataset, ProviderKind, User

__all__ = ["ClientRegistry", "Application", "Dataset", "ProviderKind", "User"]
