#Marks backend as a package: the HTTP adapter for the hosted REST/RPC API.
#No business logic.

from .client import BackendClient, BackendError, Query
from .settings import BackendSettings, settings_from_env

__all__ = [
    "BackendClient",
    "BackendError",
    "Query",
    "BackendSettings",
    "settings_from_env",
]
