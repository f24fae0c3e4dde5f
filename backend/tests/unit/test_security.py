from datetime import datetime, timedelta, timezone

import pytest
from jose import JWTError, jwt

from fixtral.core import security


def test_access_token_round_trip():
    token = security.create_access_token(user_id="u-42", email="me@example.com", secret="s3cret")
    user = security.decode_access_token(token, secret="s3cret")
    assert user.id == "u-42"
    assert user.email == "me@example.com"


def test_wrong_secret_is_rejected():
    token = security.create_access_token(user_id="u-42", secret="s3cret")
    with pytest.raises(JWTError):
        security.decode_access_token(token, secret="other")


def test_expired_token_is_rejected():
    token = security.create_access_token(user_id="u-42", secret="s3cret", expires_minutes=-5)
    with pytest.raises(JWTError):
        security.decode_access_token(token, secret="s3cret")


def test_token_without_subject_is_rejected():
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"aud": "authenticated", "exp": exp}, "s3cret", algorithm="HS256")
    with pytest.raises(ValueError):
        security.decode_access_token(token, secret="s3cret")
