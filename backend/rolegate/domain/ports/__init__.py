from .cache import CacheBackend
from .principal import Principal, PrincipalKey, PrincipalRef, as_principal

__all__ = ["CacheBackend", "Principal", "PrincipalKey", "PrincipalRef", "as_principal"]
