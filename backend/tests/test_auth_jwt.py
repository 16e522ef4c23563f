from datetime import datetime, timedelta, timezone

import jwt
import pytest

from agriops.core.auth import CurrentUser, get_current_user, require_roles
from agriops.core.config import get_settings
from agriops.core.errors import PermissionDenied, Unauthenticated


def _make_token(secret: str = "test-secret", **claims) -> str:
    payload = {
        "sub": "00000000-0000-0000-0000-000000000123",
        "email": "farmer@test.local",
        "role": "farmer",
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def jwt_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.delenv("JWT_AUDIENCE", raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


def test_get_current_user_reads_role_and_subject(jwt_env):
    user = get_current_user(authorization=f"Bearer {_make_token(role='AGENT')}")

    assert user.id == "00000000-0000-0000-0000-000000000123"
    assert user.role == "agent"
    assert user.email == "farmer@test.local"


def test_missing_or_malformed_header_is_unauthenticated(jwt_env):
    with pytest.raises(Unauthenticated):
        get_current_user(authorization=None)
    with pytest.raises(Unauthenticated):
        get_current_user(authorization=f"Token {_make_token()}")


def test_wrong_secret_is_unauthenticated(jwt_env):
    with pytest.raises(Unauthenticated) as exc:
        get_current_user(authorization=f"Bearer {_make_token('other-secret')}")
    assert exc.value.status_code == 401


def test_expired_token_is_unauthenticated(jwt_env):
    expired = datetime.now(timezone.utc) - timedelta(minutes=5)
    with pytest.raises(Unauthenticated) as exc:
        get_current_user(authorization=f"Bearer {_make_token(exp=expired)}")
    assert exc.value.message == "Access token has expired"


def test_token_without_subject_is_unauthenticated(jwt_env):
    with pytest.raises(Unauthenticated):
        get_current_user(authorization=f"Bearer {_make_token(sub='')}")


def test_unknown_role_is_forbidden(jwt_env):
    with pytest.raises(PermissionDenied) as exc:
        get_current_user(authorization=f"Bearer {_make_token(role='superuser')}")
    assert exc.value.status_code == 403


def test_inactive_user_is_forbidden(jwt_env):
    with pytest.raises(PermissionDenied):
        get_current_user(authorization=f"Bearer {_make_token(status='suspended')}")


def test_audience_is_enforced_when_configured(jwt_env):
    jwt_env.setenv("JWT_AUDIENCE", "agriops")
    get_settings.cache_clear()

    user = get_current_user(authorization=f"Bearer {_make_token(aud='agriops')}")
    assert user.role == "farmer"

    with pytest.raises(Unauthenticated):
        get_current_user(authorization=f"Bearer {_make_token(aud='other')}")


def test_require_roles_rejects_other_roles():
    only_admins = require_roles("admin")

    assert only_admins(CurrentUser(id="a", role="admin")).role == "admin"
    with pytest.raises(PermissionDenied):
        only_admins(CurrentUser(id="f", role="farmer"))
