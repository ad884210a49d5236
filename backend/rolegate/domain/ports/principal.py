from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Protocol, runtime_checkable


@runtime_checkable
class Principal(Protocol):
    """Anything that can hold roles and permissions.

    Implementations only expose an opaque identity; the grant tables key on
    the (principal_id, principal_type) pair.
    """

    @property
    def principal_id(self) -> str | int:
        ...

    @property
    def principal_type(self) -> str:
        ...


class PrincipalKey(NamedTuple):
    principal_id: str
    principal_type: str

    @property
    def cache_id(self) -> str:
        return f"{self.principal_type}:{self.principal_id}"


@dataclass(frozen=True)
class PrincipalRef:
    principal_id: str | int
    principal_type: str = "user"


def as_principal(value: Principal | str | int, default_type: str = "user") -> PrincipalKey:
    """Normalize a principal or a bare id into its composite key."""
    if isinstance(value, PrincipalKey):
        return value
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return PrincipalKey(str(value), default_type)
    if isinstance(value, Principal):
        return PrincipalKey(str(value.principal_id), value.principal_type)
    raise TypeError(f"Unsupported principal: {value!r}")
