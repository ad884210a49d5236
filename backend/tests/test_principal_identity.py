from dataclasses import dataclass

import pytest

from rolegate.clock import ensure_utc, is_active, utcnow
from rolegate.domain.ports.principal import Principal, PrincipalKey, PrincipalRef, as_principal


@dataclass
class Account:
    principal_id: int
    principal_type: str = "account"


def test_bare_ids_use_default_type() -> None:
    assert as_principal(7) == PrincipalKey("7", "user")
    assert as_principal("7", "admin") == PrincipalKey("7", "admin")


def test_any_object_with_identity_is_a_principal() -> None:
    account = Account(3)

    assert isinstance(account, Principal)
    assert as_principal(account) == PrincipalKey("3", "account")
    assert as_principal(PrincipalRef(3)).cache_id == "user:3"


def test_key_passes_through() -> None:
    key = PrincipalKey("3", "team")

    assert as_principal(key, "user") is key


def test_rejects_unsupported_values() -> None:
    with pytest.raises(TypeError):
        as_principal(True)
    with pytest.raises(TypeError):
        as_principal(object())


def test_is_active_is_strict_at_the_boundary() -> None:
    now = utcnow()

    assert is_active(None, now) is True
    assert is_active(now, now) is False
    assert is_active(ensure_utc(now.replace(tzinfo=None)), now) is False
