import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from clinic_booking.auth import jwt_handler
from clinic_booking.auth.dependencies import get_current_user, require_roles


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme='Bearer', credentials=token)


def test_access_token_round_trip() -> None:
    token = jwt_handler.create_access_token('patient@example.com', role='patient')

    payload = jwt_handler.decode_access_token(token)

    assert payload['sub'] == 'patient@example.com'
    assert payload['role'] == 'patient'
    assert payload['exp'] > payload['iat']


def test_get_current_user_resolves_token_subject(db, clinic) -> None:
    token = jwt_handler.create_access_token('patient@example.com')

    user = get_current_user(credentials=_credentials(token), db=db)

    assert user.id == clinic.patient.id


def test_get_current_user_rejects_garbage_token(db, clinic) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_credentials('not-a-token'), db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == 'Invalid token'


def test_get_current_user_rejects_unknown_user(db, clinic) -> None:
    token = jwt_handler.create_access_token('ghost@example.com')

    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_credentials(token), db=db)

    assert exception_info.value.detail == 'User not found'


def test_require_roles_blocks_other_roles(clinic) -> None:
    admin_only = require_roles('admin')

    assert admin_only(current_user=clinic.admin) is clinic.admin
    with pytest.raises(HTTPException) as exception_info:
        admin_only(current_user=clinic.patient)

    assert exception_info.value.status_code == 403
